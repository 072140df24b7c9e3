import asyncio
from typing import Any, Dict

import pytest
import pytest_asyncio

from job_scheduler.domain.job import Job, JobStatus, JobType, sources_of
from job_scheduler.domain.job_log import LogLevel
from job_scheduler.errors import JobGoneError
from job_scheduler.executor import JobExecutor
from job_scheduler.handlers.builtin import CustomHandler
from job_scheduler.handlers.factory import JobHandlerFactory, default_handler_factory
from job_scheduler.handlers.payloads import DEFAULT_SCHEMAS, EmailPayload, PayloadKind
from job_scheduler.storages.sqlalchemy import SqlAlchemyStorage


class GatedEmailHandler:
    """Email handler that blocks until the test opens the gate."""

    started: asyncio.Event
    gate: asyncio.Event
    error: Exception = None
    calls = 0

    @staticmethod
    def supported_kind() -> PayloadKind:
        return PayloadKind.EMAIL

    async def handle(self, payload: EmailPayload) -> Dict[str, Any]:
        type(self).calls += 1
        self.started.set()
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return {"type": "email", "recipient": payload.recipient}


@pytest_asyncio.fixture
async def gated_handler():
    GatedEmailHandler.started = asyncio.Event()
    GatedEmailHandler.gate = asyncio.Event()
    GatedEmailHandler.error = None
    GatedEmailHandler.calls = 0
    return GatedEmailHandler


@pytest.fixture
def gated_executor(storage: SqlAlchemyStorage, gated_handler) -> JobExecutor:
    factory = JobHandlerFactory(dict(DEFAULT_SCHEMAS), latency_scale=0)
    factory.register(gated_handler)
    factory.register(CustomHandler)
    return JobExecutor(storage, factory)


@pytest.fixture
def executor(storage: SqlAlchemyStorage) -> JobExecutor:
    return JobExecutor(storage, default_handler_factory(latency_scale=0))


async def create_job(storage: SqlAlchemyStorage, **overrides) -> Job:
    fields = dict(
        name="Welcome mail",
        type=JobType.IMMEDIATE,
        payload={"kind": "email", "recipient": "a@b.com"},
        owner="user_1",
    )
    fields.update(overrides)
    job = Job(**fields)
    await storage.create_job(job)
    return job


@pytest.mark.asyncio
async def test_execute_success(executor: JobExecutor, storage: SqlAlchemyStorage):
    job = await create_job(storage)

    completed = await executor.execute(job.id)

    assert completed.status == JobStatus.COMPLETED
    assert completed.result["type"] == "email"
    assert completed.result["recipient"] == "a@b.com"
    assert completed.started_at is not None
    assert completed.completed_at >= completed.started_at
    assert completed.execution_time >= 0
    assert completed.error is None

    logs = await storage.list_job_logs(job.id)
    assert [(log.level, log.message) for log in logs] == [
        (LogLevel.INFO, "Job execution started"),
        (LogLevel.INFO, "Job completed successfully"),
    ]
    assert all(log.execution_step == "execution" for log in logs)
    assert logs[0].data == {"payload": job.payload}
    assert logs[1].duration == completed.execution_time


@pytest.mark.asyncio
async def test_execute_failure_is_recorded_and_raised(
    gated_executor: JobExecutor, gated_handler, storage: SqlAlchemyStorage
):
    job = await create_job(storage)
    gated_handler.error = RuntimeError("smtp down")
    gated_handler.gate.set()

    with pytest.raises(RuntimeError, match="smtp down"):
        await gated_executor.execute(job.id)

    failed = await storage.get_job(job.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error == "smtp down"
    assert failed.failed_at is not None
    assert failed.current_retries == 1
    assert failed.execution_time >= 0

    logs = await storage.list_job_logs(job.id)
    assert [(log.level, log.message) for log in logs] == [
        (LogLevel.INFO, "Job execution started"),
        (LogLevel.ERROR, "Job failed"),
    ]
    assert logs[1].data["error"] == "smtp down"
    assert "RuntimeError" in logs[1].data["traceback"]


@pytest.mark.asyncio
async def test_invalid_payload_fails_the_job(executor: JobExecutor, storage: SqlAlchemyStorage):
    job = await create_job(storage, payload={"kind": "email"})

    with pytest.raises(ValueError, match="Invalid payload for kind 'email'"):
        await executor.execute(job.id)

    assert (await storage.get_job(job.id)).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_unknown_kind_runs_custom_handler(executor: JobExecutor, storage: SqlAlchemyStorage):
    job = await create_job(storage, payload={"kind": "sms", "action": "notify"})

    completed = await executor.execute(job.id)

    assert completed.result["type"] == "custom"
    assert completed.result["action"] == "notify"


@pytest.mark.asyncio
async def test_concurrent_deliveries_run_once(
    gated_executor: JobExecutor, gated_handler, storage: SqlAlchemyStorage
):
    job = await create_job(storage)

    first = asyncio.create_task(gated_executor.execute(job.id))
    second = asyncio.create_task(gated_executor.execute(job.id))
    await gated_handler.started.wait()
    gated_handler.gate.set()
    results = await asyncio.gather(first, second)

    assert gated_handler.calls == 1
    assert sum(result is not None for result in results) == 1
    assert (await storage.get_job(job.id)).status == JobStatus.COMPLETED

    logs = await storage.list_job_logs(job.id)
    assert [log.message for log in logs] == ["Job execution started", "Job completed successfully"]


@pytest.mark.asyncio
async def test_cancel_while_running_stays_cancelled(
    gated_executor: JobExecutor, gated_handler, storage: SqlAlchemyStorage
):
    job = await create_job(storage)

    running = asyncio.create_task(gated_executor.execute(job.id))
    await gated_handler.started.wait()
    cancelled = await storage.update_job(
        job.id, {"status": JobStatus.CANCELLED}, expected_statuses=sources_of(JobStatus.CANCELLED)
    )
    assert cancelled is not None
    gated_handler.gate.set()

    assert await running is None
    final = await storage.get_job(job.id)
    assert final.status == JobStatus.CANCELLED
    assert final.result is None

    logs = await storage.list_job_logs(job.id)
    assert [log.level for log in logs] == [LogLevel.INFO, LogLevel.WARN]


@pytest.mark.asyncio
async def test_cancel_while_running_discards_failure(
    gated_executor: JobExecutor, gated_handler, storage: SqlAlchemyStorage
):
    job = await create_job(storage)
    gated_handler.error = RuntimeError("too late")

    running = asyncio.create_task(gated_executor.execute(job.id))
    await gated_handler.started.wait()
    await storage.update_job(job.id, {"status": JobStatus.CANCELLED})
    gated_handler.gate.set()

    with pytest.raises(RuntimeError):
        await running
    final = await storage.get_job(job.id)
    assert final.status == JobStatus.CANCELLED
    assert final.current_retries == 0


@pytest.mark.asyncio
async def test_missing_job_is_gone(executor: JobExecutor):
    with pytest.raises(JobGoneError):
        await executor.execute("job_does_not_exist")
    assert JobGoneError.retryable is False


@pytest.mark.asyncio
async def test_recurring_template_is_not_run(executor: JobExecutor, storage: SqlAlchemyStorage):
    job = await create_job(storage, type=JobType.RECURRING, cron_expression="0 9 * * *")

    assert await executor.execute(job.id) is None
    assert (await storage.get_job(job.id)).status == JobStatus.PENDING
    assert await storage.list_job_logs(job.id) == []


@pytest.mark.asyncio
async def test_redelivery_of_failed_job(executor: JobExecutor, storage: SqlAlchemyStorage):
    job = await create_job(storage, status=JobStatus.FAILED, current_retries=1, error="smtp down")

    completed = await executor.execute(job.id)

    assert completed.status == JobStatus.COMPLETED
    assert completed.current_retries == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.ACTIVE])
async def test_delivery_of_unclaimable_job_is_noop(executor: JobExecutor, storage: SqlAlchemyStorage, status):
    job = await create_job(storage, status=status)

    assert await executor.execute(job.id) is None
    assert (await storage.get_job(job.id)).status == status
    assert await storage.list_job_logs(job.id) == []


@pytest.mark.asyncio
async def test_log_write_failure_does_not_fail_job(
    executor: JobExecutor, storage: SqlAlchemyStorage, monkeypatch
):
    job = await create_job(storage)

    async def broken_append(entry):
        raise RuntimeError("log table locked")

    monkeypatch.setattr(storage, "append_job_log", broken_append)

    completed = await executor.execute(job.id)
    assert completed.status == JobStatus.COMPLETED
