import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from job_scheduler.cron import next_cron_run, validate_cron
from job_scheduler.dispatch import submit
from job_scheduler.domain.job import Job, JobStatus, utc_now
from job_scheduler.errors import InvalidScheduleError
from job_scheduler.queue_adapter import QueueAdapter
from job_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)

# A recurring job keeps firing while its record is in one of these.
SCHEDULABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.ACTIVE})


class InitializeResult(BaseModel):
    scheduled: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)


class RecurringScheduleRegistry:
    """
    Owns one asyncio timer per recurring job.

    Each time a timer comes due the registry spawns an immediate instance of
    the recurring job and hands it to the queue. Timers for jobs that were
    cancelled or deleted are removed by a periodic sweep once the registry is
    initialized. Every change to the timer map happens under one lock.
    """

    def __init__(
        self,
        storage: Storage,
        adapter: QueueAdapter,
        cleanup_interval: float = 3600.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage: Storage = storage
        self.adapter: QueueAdapter = adapter
        self.cleanup_interval: float = cleanup_interval
        self._clock = clock
        self._lock = asyncio.Lock()
        self._timers: Dict[str, asyncio.Task] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    async def initialize(self) -> InitializeResult:
        """
        Schedule every stored recurring job that is still pending or active
        and start the stale-schedule sweep.

        A job that cannot be scheduled is logged and reported in the result;
        it never prevents the others from being scheduled.
        """
        result = InitializeResult()
        for job in await self.storage.list_recurring_active_jobs():
            try:
                await self.schedule(job)
                result.scheduled.append(job.id)
            except Exception as e:
                logger.error("Failed to schedule recurring job %s: %s", job.id, e)
                result.failed[job.id] = str(e)

        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Initialized %d recurring job(s), %d failed", len(result.scheduled), len(result.failed)
        )
        return result

    async def shutdown(self) -> None:
        async with self._lock:
            tasks = list(self._timers.values())
            self._timers.clear()
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
            self._sweep_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Recurring schedule registry stopped")

    async def schedule(self, job: Job) -> datetime:
        """
        Start (or restart) the timer of a recurring job.

        Returns:
            datetime: The first instant the job will fire.

        Raises:
            InvalidCronError: If the job's cron expression does not parse.
        """
        if not job.is_recurring:
            raise InvalidScheduleError(f"Job {job.id} is not a recurring job")
        cron = validate_cron(job.cron_expression)
        next_run_at = next_cron_run(cron, self._clock())

        async with self._lock:
            previous = self._timers.pop(job.id, None)
            if previous is not None:
                previous.cancel()
            self._timers[job.id] = asyncio.create_task(self._timer_loop(job.id, cron))

        await self.storage.update_job(job.id, {"next_run_at": next_run_at}, expected_statuses=SCHEDULABLE_STATUSES)
        logger.info("Scheduled recurring job %s (%s), next run at %s", job.id, cron, next_run_at.isoformat())
        return next_run_at

    async def reschedule(self, job: Job) -> datetime:
        return await self.schedule(job)

    async def unschedule(self, job_id: str) -> bool:
        async with self._lock:
            timer = self._timers.pop(job_id, None)
        if timer is None:
            return False
        timer.cancel()
        logger.info("Unscheduled recurring job %s", job_id)
        return True

    def scheduled_job_ids(self) -> List[str]:
        return sorted(self._timers)

    def is_scheduled(self, job_id: str) -> bool:
        return job_id in self._timers

    async def fire(self, job_id: str) -> Optional[Job]:
        """
        Spawn one immediate instance of a recurring job and enqueue it.

        The parent's ``next_run_at`` is advanced to the cron match following
        the run that just came due. Returns the new instance, or None when the
        parent is no longer schedulable.
        """
        parent = await self.storage.get_job(job_id)
        if parent is None or not parent.is_recurring or parent.status not in SCHEDULABLE_STATUSES:
            logger.warning("Recurring job %s is gone or no longer schedulable, not firing", job_id)
            return None

        now = self._clock()
        due = parent.next_run_at if parent.next_run_at and parent.next_run_at > now else now
        await self.storage.update_job(
            job_id,
            {"next_run_at": next_cron_run(parent.cron_expression, due)},
            expected_statuses=SCHEDULABLE_STATUSES,
        )

        instance = await submit(self.storage, self.adapter, parent.spawn_instance(now), immediate=True)
        logger.info("Recurring job %s fired instance %s", job_id, instance.id)
        return instance

    async def cleanup_stale(self) -> List[str]:
        """
        Remove timers whose job is no longer a pending or active recurring job.
        """
        removed: List[str] = []
        async with self._lock:
            for job_id in list(self._timers):
                job = await self.storage.get_job(job_id)
                if job is not None and job.is_recurring and job.status in SCHEDULABLE_STATUSES:
                    continue
                self._timers.pop(job_id).cancel()
                removed.append(job_id)
        if removed:
            logger.info("Removed %d stale recurring schedule(s): %s", len(removed), ", ".join(removed))
        return removed

    async def _timer_loop(self, job_id: str, cron: str):
        try:
            due = next_cron_run(cron, self._clock())
            while True:
                delay = (due - self._clock()).total_seconds()
                await asyncio.sleep(max(delay, 0))
                try:
                    # Shielded so that unscheduling never interrupts a half-submitted instance.
                    await asyncio.shield(self.fire(job_id))
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Error firing recurring job %s", job_id)
                # The sleep may wake just short of the wall-clock instant.
                due = next_cron_run(cron, max(self._clock(), due))
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self):
        try:
            while True:
                await asyncio.sleep(self.cleanup_interval)
                try:
                    await self.cleanup_stale()
                except Exception:
                    logger.exception("Error cleaning up stale recurring schedules")
        except asyncio.CancelledError:
            pass
