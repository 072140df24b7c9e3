import asyncio
import logging
from typing import Any, Dict, Optional

from celery import Celery
from celery.schedules import crontab
from redbeat import RedBeatSchedulerEntry

from job_scheduler.domain.stats import QueueStats
from job_scheduler.errors import InvalidCronError
from job_scheduler.queues.protocol import DequeueHandler, EnqueueOptions, backoff_delay, is_retryable

logger = logging.getLogger(__name__)

EXECUTE_TASK_NAME = "job_scheduler.execute_job"


def celery_priority(priority: int) -> int:
    """
    Map a job priority (-10..10) onto Celery's 0..9 message priority.
    """
    return round((min(max(priority, -10), 10) + 10) * 9 / 20)


def crontab_from_expression(expression: str) -> crontab:
    cron_items = expression.split()
    if len(cron_items) == 6:
        raise InvalidCronError("Unsupported cron expression with seconds")
    elif len(cron_items) != 5:
        raise InvalidCronError(f"Invalid cron expression: {expression!r}")

    minute, hour, day, month, weekday = cron_items
    return crontab(minute=minute, hour=hour, day_of_month=day,
                   month_of_year=month, day_of_week=weekday)


class CeleryTaskQueue:
    """
    Task queue backed by Celery workers.

    One-shot deliveries are plain ``apply_async`` calls; cron repeats are
    stored as RedBeat schedule entries so that ``celery beat`` fires them.
    Workers must run with ``--beat --scheduler redbeat.RedBeatScheduler`` (or a
    separate beat process) for repeats to fire.
    """
    app: Celery

    def __init__(self, celery_app: Celery, backoff_base: float = 2.0):
        self.app = celery_app
        self.backoff_base: float = backoff_base
        self._handler: Optional[DequeueHandler] = None

        @self.app.task(bind=True, name=EXECUTE_TASK_NAME, shared=False)
        def execute_job(task, job_id: str, max_attempts: int = 1):
            if self._handler is None:
                raise RuntimeError("No dequeue handler registered")
            try:
                return asyncio.run(self._handler(job_id))
            except Exception as e:
                attempt = task.request.retries + 1
                if is_retryable(e) and attempt < max_attempts:
                    raise task.retry(
                        exc=e,
                        countdown=backoff_delay(self.backoff_base, attempt),
                        max_retries=max_attempts - 1,
                    )
                raise

        self._celery_task = execute_job

    @property
    def redbeat_prefix(self) -> str:
        return self.app.conf.get("redbeat_key_prefix") or "redbeat:"

    def on_dequeue(self, handler: DequeueHandler) -> None:
        self._handler = handler

    async def start(self):
        # Workers are separate `celery worker` processes.
        pass

    async def stop(self):
        pass

    async def enqueue(self, job_id: str, options: EnqueueOptions) -> str:
        if options.repeat:
            return await asyncio.to_thread(self._save_repeat_entry, job_id, options)

        kwargs: Dict[str, Any] = {
            "args": [job_id],
            "kwargs": {"max_attempts": options.max_attempts},
            "priority": celery_priority(options.priority),
        }
        if options.delay:
            kwargs["countdown"] = options.delay.total_seconds()
        result = await asyncio.to_thread(self._celery_task.apply_async, **kwargs)
        return result.id

    async def cancel(self, queue_id: str) -> None:
        if queue_id.startswith(self.redbeat_prefix):
            await asyncio.to_thread(self._delete_repeat_entry, queue_id)
        else:
            await asyncio.to_thread(self.app.control.revoke, queue_id)

    async def stats(self) -> QueueStats:
        inspect = self.app.control.inspect(timeout=1.0)
        active, reserved, scheduled = await asyncio.gather(
            asyncio.to_thread(inspect.active),
            asyncio.to_thread(inspect.reserved),
            asyncio.to_thread(inspect.scheduled),
        )
        return QueueStats(
            active=_count(active),
            waiting=_count(reserved),
            delayed=_count(scheduled),
        )

    def _save_repeat_entry(self, job_id: str, options: EnqueueOptions) -> str:
        entry = RedBeatSchedulerEntry(
            f"crontab_job:{job_id}",
            self._celery_task.name,
            crontab_from_expression(options.repeat),
            args=[job_id],
            kwargs={"max_attempts": options.max_attempts},
            options={"priority": celery_priority(options.priority)},
            app=self.app,
        )
        entry.save()
        return entry.key

    def _delete_repeat_entry(self, key: str) -> None:
        try:
            entry = RedBeatSchedulerEntry.from_key(key, app=self.app)
        except KeyError:
            logger.debug("RedBeat entry %s already gone", key)
            return
        entry.delete()


def _count(replies: Optional[Dict[str, list]]) -> int:
    return sum(len(tasks) for tasks in (replies or {}).values())
