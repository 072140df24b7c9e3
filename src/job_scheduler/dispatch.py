import logging

from job_scheduler.domain.job import Job, JobStatus, sources_of
from job_scheduler.errors import JobSchedulerError
from job_scheduler.queue_adapter import QueueAdapter
from job_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)


async def submit(storage: Storage, adapter: QueueAdapter, job: Job, immediate: bool = False) -> Job:
    """
    Persist a new job, hand it to the queue and record the queue id.

    If the queue refuses the job, the record is cancelled with the error
    message and the error is re-raised.
    """
    await storage.create_job(job)
    try:
        if immediate:
            queue_id = await adapter.enqueue_immediate(job)
        else:
            queue_id = await adapter.enqueue(job)
    except JobSchedulerError as e:
        logger.error("Could not enqueue job %s: %s", job.id, e)
        await storage.update_job(
            job.id,
            {"status": JobStatus.CANCELLED, "error": str(e)},
            expected_statuses=sources_of(JobStatus.CANCELLED),
        )
        raise

    updated = await storage.update_job(job.id, {"queue_id": queue_id})
    return updated or job.model_copy(update={"queue_id": queue_id})
