import logging
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from job_scheduler.domain.job import Job, JobStatus, utc_now
from job_scheduler.domain.job_log import JobLog, LogLevel
from job_scheduler.errors import JobGoneError
from job_scheduler.handlers.factory import JobHandlerFactory
from job_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)

EXECUTION_STEP = "execution"

CLAIMABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.DELAYED, JobStatus.FAILED})


class JobExecutor:
    """
    Runs one queue delivery of a job.

    Every status write is conditional on the status the executor expects, so
    a redelivered job is only ever claimed once and a job cancelled while its
    handler runs stays cancelled.
    """

    def __init__(
        self,
        storage: Storage,
        handler_factory: JobHandlerFactory,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage: Storage = storage
        self.handler_factory: JobHandlerFactory = handler_factory
        self._clock = clock

    async def execute(self, job_id: str) -> Optional[Job]:
        """
        Claim, run and record a job.

        Returns the job in its terminal state, or None when there was nothing
        to run (lost the claim, recurring template, or the outcome was
        discarded because the job was cancelled meanwhile). Handler errors are
        re-raised after they are recorded.
        """
        job = await self.storage.get_job(job_id)
        if job is None:
            logger.error("Job %s no longer exists, aborting execution", job_id)
            raise JobGoneError(f"Job {job_id} not found")

        if job.is_recurring:
            # Recurring jobs run through the instances the registry spawns.
            logger.debug("Skipping delivery of recurring job %s", job_id)
            return None

        started_at = self._clock()
        claimed = await self.storage.update_job(
            job_id,
            {"status": JobStatus.ACTIVE, "started_at": started_at},
            expected_statuses=CLAIMABLE_STATUSES,
        )
        if claimed is None:
            logger.info("Job %s was already claimed or is no longer runnable", job_id)
            return None

        await self._log(job_id, LogLevel.INFO, "Job execution started", {"payload": claimed.payload})

        try:
            handler, payload = self.handler_factory.get_handler(claimed.payload)
            result = await handler.handle(payload)
        except Exception as e:
            execution_time = self._elapsed_ms(started_at)
            failed = await self.storage.update_job(
                job_id,
                {
                    "status": JobStatus.FAILED,
                    "failed_at": self._clock(),
                    "error": str(e),
                    "execution_time": execution_time,
                    "current_retries": claimed.current_retries + 1,
                },
                expected_statuses=[JobStatus.ACTIVE],
            )
            if failed is None:
                await self._discarded(job_id, "failure", execution_time, {"error": str(e)})
            else:
                logger.error("Job %s failed: %s", job_id, e)
                await self._log(
                    job_id,
                    LogLevel.ERROR,
                    "Job failed",
                    {"error": str(e), "traceback": traceback.format_exc()},
                    duration=execution_time,
                )
            raise

        execution_time = self._elapsed_ms(started_at)
        completed = await self.storage.update_job(
            job_id,
            {
                "status": JobStatus.COMPLETED,
                "completed_at": self._clock(),
                "result": result,
                "execution_time": execution_time,
            },
            expected_statuses=[JobStatus.ACTIVE],
        )
        if completed is None:
            await self._discarded(job_id, "result", execution_time, {"result": result})
            return None

        logger.info("Job %s completed in %.0fms", job_id, execution_time)
        await self._log(
            job_id,
            LogLevel.INFO,
            "Job completed successfully",
            {"result": result, "execution_time": execution_time},
            duration=execution_time,
        )
        return completed

    def _elapsed_ms(self, started_at: datetime) -> float:
        return (self._clock() - started_at).total_seconds() * 1000

    async def _discarded(self, job_id: str, outcome: str, execution_time: float, data: Dict[str, Any]) -> None:
        logger.warning("Job %s is no longer active, discarding its %s", job_id, outcome)
        await self._log(
            job_id,
            LogLevel.WARN,
            f"Job {outcome} discarded, job is no longer active",
            data,
            duration=execution_time,
        )

    async def _log(
        self,
        job_id: str,
        level: LogLevel,
        message: str,
        data: Dict[str, Any],
        duration: Optional[float] = None,
    ) -> None:
        entry = JobLog(
            job_id=job_id,
            level=level,
            message=message,
            data=data,
            execution_step=EXECUTION_STEP,
            duration=duration,
        )
        try:
            await self.storage.append_job_log(entry)
        except Exception:
            logger.exception("Failed to write %s log for job %s", level.value, job_id)
