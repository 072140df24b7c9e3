import asyncio

import pytest
import pytest_asyncio
from aioresponses import aioresponses

from job_scheduler import (
    HealthStatus,
    JobScheduler,
    JobSpec,
    JobStatus,
    JobType,
    LogLevel,
    RetryExhaustedError,
    Settings,
)
from job_scheduler.queues.memory import InMemoryTaskQueue
from job_scheduler.storages.sqlalchemy import InMemoryStorage

OWNER = "user_1"


@pytest_asyncio.fixture
async def scheduler():
    settings = Settings(
        _env_file=None,
        poll_interval=0.01,
        backoff_base=0.01,
        handler_latency_scale=0,
        worker_concurrency=2,
    )
    scheduler = JobScheduler(settings, storage=InMemoryStorage())
    await scheduler.start()
    yield scheduler
    await scheduler.stop()


async def wait_for_status(scheduler: JobScheduler, job_id: str, *statuses: JobStatus, timeout: float = 5.0):
    async def _poll():
        while True:
            job = await scheduler.get_job(job_id, OWNER)
            if job.status in statuses:
                return job
            await asyncio.sleep(0.02)

    return await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
async def test_email_job_runs_to_completion(scheduler: JobScheduler):
    assert isinstance(scheduler.queue, InMemoryTaskQueue)
    job = await scheduler.create_job(
        JobSpec(
            name="Welcome mail",
            type=JobType.IMMEDIATE,
            payload={"kind": "email", "recipient": "a@b.com"},
            owner=OWNER,
        )
    )

    done = await wait_for_status(scheduler, job.id, JobStatus.COMPLETED)

    assert done.result["type"] == "email"
    logs = await scheduler.get_job_logs(job.id, OWNER)
    assert [(log.level, log.message) for log in logs] == [
        (LogLevel.INFO, "Job execution started"),
        (LogLevel.INFO, "Job completed successfully"),
    ]
    assert logs[0].id < logs[1].id


@pytest.mark.asyncio
async def test_failing_webhook_uses_its_retry_budget(scheduler: JobScheduler):
    with aioresponses() as m:
        m.post("https://hooks.example.com/fail", status=500, repeat=True)
        job = await scheduler.create_job(
            JobSpec(
                name="Notify partner",
                type=JobType.IMMEDIATE,
                payload={"kind": "webhook", "url": "https://hooks.example.com/fail"},
                owner=OWNER,
                max_retries=2,
            )
        )
        await scheduler.queue.wait_idle(timeout=5)

    failed = await scheduler.get_job(job.id, OWNER)
    assert failed.status == JobStatus.FAILED
    assert failed.current_retries == 2
    assert "500" in failed.error

    errors = await scheduler.get_job_logs(job.id, OWNER, level=LogLevel.ERROR)
    assert len(errors) == 2

    with pytest.raises(RetryExhaustedError):
        await scheduler.retry_job(job.id, OWNER)


@pytest.mark.asyncio
async def test_recurring_job_spawns_completed_instances(scheduler: JobScheduler):
    # Six fields: fires every second.
    parent = await scheduler.create_job(
        JobSpec(
            name="Heartbeat",
            type=JobType.RECURRING,
            cron_expression="* * * * * *",
            payload={"kind": "cleanup", "item_count": 1},
            owner=OWNER,
        )
    )

    async def _first_completed_instance():
        while True:
            instances = await scheduler.list_jobs(OWNER, status=JobStatus.COMPLETED, type=JobType.IMMEDIATE)
            if instances:
                return instances[0]
            await asyncio.sleep(0.05)

    instance = await asyncio.wait_for(_first_completed_instance(), 5)

    assert instance.parent_id == parent.id
    assert instance.result["type"] == "cleanup"
    assert (await scheduler.get_job(parent.id, OWNER)).status == JobStatus.PENDING

    await scheduler.cancel_job(parent.id, OWNER)
    assert scheduler.registry.scheduled_job_ids() == []


@pytest.mark.asyncio
async def test_stats(scheduler: JobScheduler):
    job = await scheduler.create_job(
        JobSpec(name="Purge", type=JobType.IMMEDIATE, payload={"kind": "cleanup"}, owner=OWNER)
    )
    await wait_for_status(scheduler, job.id, JobStatus.COMPLETED)

    stats = await scheduler.get_stats(OWNER)
    assert stats.jobs.by_status[JobStatus.COMPLETED] == 1
    assert stats.queue.completed == 1


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("JOB_SCHEDULER_QUEUE_TIMEOUT", "2.5")
    monkeypatch.setenv("JOB_SCHEDULER_LOG_LEVEL", "debug")

    settings = Settings(_env_file=None)

    assert settings.queue_timeout == 2.5
    assert settings.log_level == "DEBUG"
    assert settings.queue_backend == "memory"


def test_settings_reject_unknown_log_level():
    with pytest.raises(ValueError):
        Settings(_env_file=None, log_level="chatty")


@pytest.mark.asyncio
async def test_health_ok(scheduler: JobScheduler):
    report = await scheduler.health()

    assert report.status == HealthStatus.OK
    assert (report.storage, report.queue) == ("connected", "active")
    assert report.queue_stats is not None
    assert report.uptime >= 0


@pytest.mark.asyncio
async def test_health_degraded_when_store_and_queue_are_unreachable(scheduler: JobScheduler, monkeypatch):
    async def unreachable(*args, **kwargs):
        raise ConnectionError("connection refused")

    monkeypatch.setattr(scheduler.storage, "ping", unreachable)
    monkeypatch.setattr(scheduler.queue, "stats", unreachable)

    report = await scheduler.health()

    assert report.status == HealthStatus.DEGRADED
    assert (report.storage, report.queue) == ("disconnected", "inactive")
    assert report.queue_stats is None


@pytest.mark.asyncio
async def test_start_applies_configured_log_level(monkeypatch):
    levels = []
    monkeypatch.setattr("job_scheduler.scheduler.configure_logging", levels.append)
    scheduler = JobScheduler(Settings(_env_file=None, log_level="warning"), storage=InMemoryStorage())

    await scheduler.start()
    await scheduler.stop()

    assert levels == ["WARNING"]
