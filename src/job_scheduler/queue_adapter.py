import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from job_scheduler.domain.job import Job, JobType, utc_now
from job_scheduler.domain.stats import QueueStats
from job_scheduler.errors import InvalidScheduleError, JobSchedulerError, QueueUnavailableError
from job_scheduler.queues.protocol import EnqueueOptions, TaskQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QueueAdapter:
    """
    Translates a job into a request against the task queue.

    Holds no state of its own. Every queue call is bounded by ``timeout``
    seconds; timeouts and queue-side failures surface as
    QueueUnavailableError.
    """

    def __init__(
        self,
        queue: TaskQueue,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.queue: TaskQueue = queue
        self.timeout: float = timeout
        self._clock = clock

    def options_for(self, job: Job, now: Optional[datetime] = None) -> EnqueueOptions:
        now = now or self._clock()
        options = EnqueueOptions(priority=job.priority, max_attempts=job.max_attempts)

        if job.type == JobType.IMMEDIATE:
            options.delay = timedelta(0)
        elif job.type == JobType.SCHEDULED:
            if job.scheduled_at is None:
                raise InvalidScheduleError(f"Scheduled job {job.id} has no scheduled time")
            delay = job.scheduled_at - now
            if delay <= timedelta(0):
                raise InvalidScheduleError("Scheduled time must be in the future")
            options.delay = delay
        elif job.type == JobType.RECURRING:
            if not job.cron_expression:
                raise InvalidScheduleError(f"Recurring job {job.id} has no cron expression")
            options.repeat = job.cron_expression
        elif job.type == JobType.DELAYED:
            if job.delay is None:
                raise InvalidScheduleError(f"Delayed job {job.id} has no delay")
            options.delay = job.delay
        else:
            raise InvalidScheduleError(f"Unsupported job type: {job.type}")
        return options

    async def enqueue(self, job: Job) -> str:
        options = self.options_for(job)
        queue_id = await self._call(self.queue.enqueue(job.id, options), f"enqueue job {job.id}")
        logger.info("%s job added to queue: %s (queue id %s)", job.type.value.capitalize(), job.id, queue_id)
        return queue_id

    async def enqueue_immediate(self, job: Job) -> str:
        options = EnqueueOptions(delay=timedelta(0), priority=job.priority, max_attempts=job.max_attempts)
        queue_id = await self._call(self.queue.enqueue(job.id, options), f"enqueue job {job.id}")
        logger.info("Immediate job added to queue: %s (queue id %s)", job.id, queue_id)
        return queue_id

    async def cancel(self, queue_id: str) -> None:
        await self._call(self.queue.cancel(queue_id), f"cancel queue entry {queue_id}")
        logger.info("Job removed from queue: %s", queue_id)

    async def update(self, job: Job) -> str:
        """
        Replace the job's queue entry with one built from its current state.

        The new entry is added before the old one is dropped, so a queue
        failure leaves the job with the entry it already had.
        """
        queue_id = await self.enqueue(job)
        if job.queue_id:
            try:
                await self.cancel(job.queue_id)
            except QueueUnavailableError:
                await self.discard(queue_id)
                raise
        return queue_id

    async def discard(self, queue_id: str) -> None:
        """
        Cancel an entry that no job record points at; failures are logged.
        """
        try:
            await self.cancel(queue_id)
        except QueueUnavailableError as e:
            logger.error("Could not drop orphaned queue entry %s: %s", queue_id, e)

    async def stats(self) -> QueueStats:
        return await self._call(self.queue.stats(), "read queue stats")

    async def _call(self, call: Awaitable[T], action: str) -> T:
        try:
            return await asyncio.wait_for(call, self.timeout)
        except asyncio.TimeoutError as e:
            logger.error("Queue did not answer within %.1fs: %s", self.timeout, action)
            raise QueueUnavailableError(f"Queue timed out: {action}") from e
        except JobSchedulerError:
            raise
        except Exception as e:
            logger.error("Failed to %s: %s", action, e)
            raise QueueUnavailableError(f"Failed to {action}: {e}") from e
