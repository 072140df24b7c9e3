import logging
import time
from typing import List, Optional, Union

from job_scheduler.config import SERVICE_NAME, Settings, configure_logging, get_settings
from job_scheduler.domain.job import Job, JobPatch, JobSpec, JobStatus, JobType
from job_scheduler.domain.job_log import JobLog, LogLevel
from job_scheduler.domain.stats import HealthReport, HealthStatus, JobMetrics, MetricsPeriod, SchedulerStats
from job_scheduler.errors import QueueUnavailableError
from job_scheduler.executor import JobExecutor
from job_scheduler.handlers.factory import JobHandlerFactory, default_handler_factory
from job_scheduler.orchestrator import JobOrchestrator
from job_scheduler.queue_adapter import QueueAdapter
from job_scheduler.queues.memory import InMemoryTaskQueue
from job_scheduler.queues.protocol import TaskQueue
from job_scheduler.registry import InitializeResult, RecurringScheduleRegistry
from job_scheduler.storages.protocol import Storage
from job_scheduler.storages.sqlalchemy import SqlAlchemyStorage

logger = logging.getLogger(__name__)


def build_queue(settings: Settings) -> TaskQueue:
    if settings.queue_backend == "celery":
        from celery import Celery

        from job_scheduler.queues.celery import CeleryTaskQueue

        celery_app = Celery(SERVICE_NAME, broker=settings.broker_url, backend=settings.result_backend)
        celery_app.conf.update(
            beat_scheduler="redbeat.RedBeatScheduler",
            redbeat_redis_url=settings.redbeat_redis_url,
            worker_concurrency=settings.worker_concurrency,
        )
        return CeleryTaskQueue(celery_app, backoff_base=settings.backoff_base)

    return InMemoryTaskQueue(
        concurrency=settings.worker_concurrency,
        poll_interval=settings.poll_interval,
        backoff_base=settings.backoff_base,
        keep_completed=settings.keep_completed,
        keep_failed=settings.keep_failed,
    )


class JobScheduler:
    """
    Wires the store, task queue, registry, executor and orchestrator together.

    Any collaborator not passed in is built from ``settings``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Optional[Storage] = None,
        queue: Optional[TaskQueue] = None,
        handler_factory: Optional[JobHandlerFactory] = None,
    ):
        self.settings: Settings = settings or get_settings()
        self.storage: Storage = storage or SqlAlchemyStorage(self.settings.database_url)
        self.queue: TaskQueue = queue or build_queue(self.settings)
        self.handler_factory: JobHandlerFactory = handler_factory or default_handler_factory(
            self.settings.handler_latency_scale
        )
        self.adapter = QueueAdapter(self.queue, timeout=self.settings.queue_timeout)
        self.registry = RecurringScheduleRegistry(
            self.storage, self.adapter, cleanup_interval=self.settings.cleanup_interval
        )
        self.executor = JobExecutor(self.storage, self.handler_factory)
        self.orchestrator = JobOrchestrator(self.storage, self.adapter, self.registry)
        self.is_running: bool = False
        self._started_at: Optional[float] = None

    async def start(self) -> InitializeResult:
        configure_logging(self.settings.log_level)
        await self.storage.create_tables()
        self.queue.on_dequeue(self.executor.execute)
        await self.queue.start()
        result = await self.registry.initialize()
        self.is_running = True
        self._started_at = time.monotonic()
        logger.info("Job scheduler started")
        return result

    async def stop(self):
        if not self.is_running:
            return
        self.is_running = False
        self._started_at = None
        await self.registry.shutdown()
        await self.queue.stop()
        await self.storage.close()
        logger.info("Job scheduler stopped")

    async def create_job(self, spec: JobSpec) -> Job:
        return await self.orchestrator.create_job(spec)

    async def update_job(self, job_id: str, owner: str, patch: JobPatch) -> Job:
        return await self.orchestrator.update_job(job_id, owner, patch)

    async def cancel_job(self, job_id: str, owner: str) -> Job:
        return await self.orchestrator.cancel_job(job_id, owner)

    async def retry_job(self, job_id: str, owner: str) -> Job:
        return await self.orchestrator.retry_job(job_id, owner)

    async def get_job(self, job_id: str, owner: str) -> Job:
        return await self.orchestrator.get_job(job_id, owner)

    async def list_jobs(
        self,
        owner: str,
        status: Optional[JobStatus] = None,
        type: Optional[JobType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Job]:
        return await self.orchestrator.list_jobs(owner, status=status, type=type, limit=limit, offset=offset)

    async def get_job_logs(
        self,
        job_id: str,
        owner: str,
        level: Optional[LogLevel] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[JobLog]:
        return await self.orchestrator.get_job_logs(job_id, owner, level=level, limit=limit, offset=offset)

    async def get_stats(self, owner: Optional[str] = None) -> SchedulerStats:
        return await self.orchestrator.get_stats(owner)

    async def get_job_metrics(
        self, owner: Optional[str] = None, period: Union[MetricsPeriod, str] = MetricsPeriod.WEEK
    ) -> JobMetrics:
        return await self.orchestrator.get_job_metrics(owner, period=period)

    async def health(self) -> HealthReport:
        """
        Probe the store and the queue.

        The report is DEGRADED when either of them cannot be reached; it never
        raises for that.
        """
        report = HealthReport()
        if self._started_at is not None:
            report.uptime = time.monotonic() - self._started_at

        try:
            await self.storage.ping()
        except Exception as e:
            logger.warning("Health check: store unreachable: %s", e)
            report.storage = "disconnected"
            report.status = HealthStatus.DEGRADED

        try:
            report.queue_stats = await self.adapter.stats()
        except QueueUnavailableError as e:
            logger.warning("Health check: queue unreachable: %s", e)
            report.queue = "inactive"
            report.status = HealthStatus.DEGRADED
        return report
