import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from job_scheduler.cron import validate_cron
from job_scheduler.dispatch import submit
from job_scheduler.domain.job import Job, JobPatch, JobSpec, JobStatus, JobType, sources_of, utc_now
from job_scheduler.domain.job_log import JobLog, LogLevel
from job_scheduler.domain.stats import JobMetrics, MetricsPeriod, SchedulerStats
from job_scheduler.errors import (
    InvalidScheduleError,
    InvalidStateError,
    NotFoundError,
    RetryExhaustedError,
    ValidationError,
)
from job_scheduler.queue_adapter import QueueAdapter
from job_scheduler.registry import RecurringScheduleRegistry
from job_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)

# Statuses in which a job has not started running yet.
WAITING_STATUSES = frozenset({JobStatus.PENDING, JobStatus.DELAYED})
UPDATABLE_STATUSES = frozenset(JobStatus) - {JobStatus.ACTIVE, JobStatus.COMPLETED}
# Window of the "recent" figures in get_stats.
RECENT_WINDOW = timedelta(hours=24)

# The one scheduling field each job type carries.
_SCHEDULE_FIELDS = {
    JobType.SCHEDULED: "scheduled_at",
    JobType.RECURRING: "cron_expression",
    JobType.DELAYED: "delay",
}


class JobOrchestrator:
    """
    Entry point for every owner-facing job operation.

    The orchestrator is the only component that moves a job between pending,
    failed and cancelled; the executor owns the active, completed and failed
    writes of a run. All status writes are conditional on the status observed
    when the operation was checked.
    """

    def __init__(
        self,
        storage: Storage,
        adapter: QueueAdapter,
        registry: RecurringScheduleRegistry,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage: Storage = storage
        self.adapter: QueueAdapter = adapter
        self.registry: RecurringScheduleRegistry = registry
        self._clock = clock

    async def create_job(self, spec: JobSpec) -> Job:
        """
        Validate, persist and enqueue a new job.

        Raises:
            ValidationError: If the type's scheduling field is missing or malformed.
            InvalidScheduleError: If a scheduled job's time is not in the future.
            InvalidCronError: If a recurring job's cron expression does not parse.
            QueueUnavailableError: If the queue refused the job; the stored record is cancelled.
        """
        job = self._validate_schedule(Job.from_spec(spec))
        # Fails before anything is persisted.
        self.adapter.options_for(job, self._clock())

        job = await submit(self.storage, self.adapter, job)
        logger.info("Created %s job %s for owner %s", job.type.value, job.id, job.owner)

        if job.is_recurring:
            await self.registry.schedule(job)
            job = await self.storage.get_job(job.id) or job
        return job

    async def update_job(self, job_id: str, owner: str, patch: JobPatch) -> Job:
        """
        Apply a patch to a job that is not running or completed.

        A job still waiting to run gets a fresh queue entry built from the
        patched fields. If the queue refuses it, QueueUnavailableError is
        raised and neither the record nor the old entry is touched.
        """
        job = await self._find(job_id, owner)
        if job.status not in UPDATABLE_STATUSES:
            raise InvalidStateError(f"Cannot update job {job_id} while it is {job.status.value}")

        own_field = _SCHEDULE_FIELDS.get(job.type)
        changes = {
            key: value
            for key, value in patch.changes().items()
            if key == own_field or key not in _SCHEDULE_FIELDS.values()
        }
        merged = self._validate_schedule(job.model_copy(update=changes))
        if "cron_expression" in changes:
            changes["cron_expression"] = merged.cron_expression
        queue_id = None
        if job.queue_id and job.status in WAITING_STATUSES:
            # Nothing is written unless the queue accepted the new entry.
            queue_id = await self.adapter.update(merged)
            changes["queue_id"] = queue_id

        updated = await self.storage.update_job(job_id, changes, expected_statuses=UPDATABLE_STATUSES)
        if updated is None:
            if queue_id is not None:
                await self.adapter.discard(queue_id)
            raise InvalidStateError(f"Job {job_id} started running before it could be updated")

        if updated.is_recurring and self.registry.is_scheduled(job_id):
            await self.registry.reschedule(updated)
            updated = await self.storage.get_job(job_id) or updated

        logger.info("Updated job %s: %s", job_id, ", ".join(sorted(changes)) or "no changes")
        return updated

    async def cancel_job(self, job_id: str, owner: str) -> Job:
        job = await self._find(job_id, owner)
        if job.is_terminal:
            raise InvalidStateError(f"Cannot cancel job {job_id} while it is {job.status.value}")

        if job.queue_id:
            await self.adapter.cancel(job.queue_id)
        if job.is_recurring:
            await self.registry.unschedule(job_id)

        cancelled = await self.storage.update_job(
            job_id, {"status": JobStatus.CANCELLED}, expected_statuses=sources_of(JobStatus.CANCELLED)
        )
        if cancelled is None:
            raise InvalidStateError(f"Job {job_id} finished before it could be cancelled")
        logger.info("Cancelled job %s", job_id)
        return cancelled

    async def retry_job(self, job_id: str, owner: str) -> Job:
        """
        Re-enqueue a failed job to run immediately, whatever its type.

        Raises:
            InvalidStateError: If the job is not failed.
            RetryExhaustedError: If the job has used all of its retries.
            QueueUnavailableError: If the queue refused the job; it stays failed.
        """
        job = await self._find(job_id, owner)
        if job.status != JobStatus.FAILED:
            raise InvalidStateError(f"Only failed jobs can be retried, job {job_id} is {job.status.value}")
        if job.current_retries >= job.max_retries:
            raise RetryExhaustedError(
                f"Job {job_id} has exhausted its retries ({job.current_retries}/{job.max_retries})"
            )

        # Enqueued while the job is still failed, so a queue outage leaves it retryable.
        queue_id = await self.adapter.enqueue_immediate(job)
        pending = await self.storage.update_job(
            job_id,
            {"status": JobStatus.PENDING, "error": None, "failed_at": None, "queue_id": queue_id},
            expected_statuses=[JobStatus.FAILED],
        )
        if pending is None:
            current = await self.storage.get_job(job_id)
            if current is not None and current.status in (JobStatus.ACTIVE, JobStatus.COMPLETED):
                logger.info("Job %s was picked up again before its retry was recorded", job_id)
                return current
            await self.adapter.discard(queue_id)
            raise InvalidStateError(f"Job {job_id} changed state before it could be retried")

        if job.queue_id:
            # Drop any redelivery the queue still has pending.
            await self.adapter.discard(job.queue_id)
        logger.info("Job %s queued for retry (%d/%d)", job_id, job.current_retries, job.max_retries)
        return pending

    async def get_job(self, job_id: str, owner: str) -> Job:
        return await self._find(job_id, owner)

    async def list_jobs(
        self,
        owner: str,
        status: Optional[JobStatus] = None,
        type: Optional[JobType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Job]:
        return await self.storage.list_jobs(owner=owner, status=status, type=type, limit=limit, offset=offset)

    async def get_job_logs(
        self,
        job_id: str,
        owner: str,
        level: Optional[LogLevel] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[JobLog]:
        await self._find(job_id, owner)
        return await self.storage.list_job_logs(job_id, level=level, limit=limit, offset=offset)

    async def get_stats(self, owner: Optional[str] = None) -> SchedulerStats:
        """
        Job counts and execution times, overall and over the last 24 hours,
        plus the queue's entry counts.
        """
        return SchedulerStats(
            jobs=await self.storage.job_stats(owner, since=self._clock() - RECENT_WINDOW),
            queue=await self.adapter.stats(),
            scheduled_recurring=len(self.registry.scheduled_job_ids()),
        )

    async def get_job_metrics(
        self, owner: Optional[str] = None, period: Union[MetricsPeriod, str] = MetricsPeriod.WEEK
    ) -> JobMetrics:
        try:
            period = MetricsPeriod(period)
        except ValueError:
            logger.warning("Unknown metrics period %r, using %s", period, MetricsPeriod.WEEK.value)
            period = MetricsPeriod.WEEK
        since = self._clock() - period.window
        return JobMetrics(period=period, since=since, days=await self.storage.job_metrics(since, owner=owner))

    async def _find(self, job_id: str, owner: str) -> Job:
        job = await self.storage.find_job(job_id, owner)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def _validate_schedule(self, job: Job) -> Job:
        """
        Check the job carries its type's scheduling field and drop the others.
        """
        field = _SCHEDULE_FIELDS.get(job.type)
        if field is not None and getattr(job, field) is None:
            raise ValidationError(f"{field} is required for {job.type.value} jobs")

        if job.type == JobType.RECURRING:
            job.cron_expression = validate_cron(job.cron_expression)
        elif job.type == JobType.DELAYED and job.delay < timedelta(0):
            raise InvalidScheduleError("Delay must not be negative")

        for other in _SCHEDULE_FIELDS.values():
            if other != field:
                setattr(job, other, None)
        return job
