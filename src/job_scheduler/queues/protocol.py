from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol

from pydantic import BaseModel, Field

from job_scheduler.domain.stats import QueueStats

DequeueHandler = Callable[[str], Awaitable[Any]]


class EnqueueOptions(BaseModel):
    delay: Optional[timedelta] = Field(None, description="Wait this long before the first delivery")
    repeat: Optional[str] = Field(None, description="Cron expression; the entry is re-delivered on every match")
    priority: int = Field(default=0, ge=-10, le=10, description="Higher is delivered first")
    max_attempts: int = Field(default=1, ge=1, description="Deliveries per fire before giving up")


def backoff_delay(base: float, attempt: int) -> float:
    """
    Exponential backoff in seconds after the ``attempt``-th failed delivery.
    """
    return base * (2 ** max(attempt - 1, 0))


def is_retryable(error: BaseException) -> bool:
    # Errors that do not declare themselves are handler failures.
    return getattr(error, "retryable", True)


class TaskQueue(Protocol):
    """
    At-least-once delivery of job ids to a registered handler.
    """

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...

    def on_dequeue(self, handler: DequeueHandler) -> None:
        """
        Register the coroutine invoked with the job id on every delivery.
        A raised exception counts as a failed attempt.
        """
        ...

    async def enqueue(self, job_id: str, options: EnqueueOptions) -> str:
        """
        Queue a delivery and return the queue-assigned identifier.
        """
        ...

    async def cancel(self, queue_id: str) -> None:
        """
        Drop a queued entry. Unknown identifiers are ignored.
        """
        ...

    async def stats(self) -> QueueStats:
        ...
