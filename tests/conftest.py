import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from job_scheduler.domain.stats import QueueStats
from job_scheduler.queues.memory import InMemoryTaskQueue
from job_scheduler.storages.sqlalchemy import InMemoryStorage

FIXED_NOW = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)


class BrokenQueue:
    """Task queue whose broker is unreachable."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.cancelled = []

    def on_dequeue(self, handler):
        pass

    async def start(self):
        pass

    async def stop(self):
        pass

    async def enqueue(self, job_id, options):
        if self.delay:
            await asyncio.sleep(self.delay)
        raise ConnectionError("broker unreachable")

    async def cancel(self, queue_id):
        self.cancelled.append(queue_id)

    async def stats(self):
        return QueueStats()


@pytest_asyncio.fixture
async def storage():
    storage = InMemoryStorage()
    await storage.create_tables()
    yield storage
    await storage.close()


@pytest_asyncio.fixture
async def memory_queue():
    queue = InMemoryTaskQueue(concurrency=2, poll_interval=0.01, backoff_base=0.01)
    yield queue
    await queue.stop()


class FlakyQueue(InMemoryTaskQueue):
    """In-memory queue whose broker can be taken down and brought back."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.down = False
        # Entries the broker refuses to cancel.
        self.stuck = set()

    async def enqueue(self, job_id, options):
        if self.down:
            raise ConnectionError("broker unreachable")
        return await super().enqueue(job_id, options)

    async def cancel(self, queue_id):
        if self.down or queue_id in self.stuck:
            raise ConnectionError("broker unreachable")
        await super().cancel(queue_id)


@pytest_asyncio.fixture
async def flaky_queue():
    queue = FlakyQueue(concurrency=2, poll_interval=0.01, backoff_base=0.01)
    yield queue
    await queue.stop()
