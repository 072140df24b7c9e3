import asyncio
import itertools
import logging
import uuid
from collections import deque
from datetime import datetime, timedelta
from enum import Enum
from typing import Deque, Dict, List, Optional

from pydantic import BaseModel

from job_scheduler.cron import next_cron_run, validate_cron
from job_scheduler.domain.job import utc_now
from job_scheduler.domain.stats import QueueStats
from job_scheduler.queues.protocol import DequeueHandler, EnqueueOptions, backoff_delay, is_retryable

logger = logging.getLogger(__name__)


class EntryState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    REPEATING = "repeating"
    COMPLETED = "completed"
    FAILED = "failed"


_PENDING_STATES = frozenset({EntryState.WAITING, EntryState.DELAYED, EntryState.ACTIVE})


class QueueEntry(BaseModel):
    id: str
    job_id: str
    options: EnqueueOptions
    state: EntryState
    run_at: Optional[datetime] = None
    attempts_made: int = 0
    fires: int = 0
    last_error: Optional[str] = None


class InMemoryTaskQueue:
    """
    Task queue running inside the current event loop.

    Entries are delivered to the registered handler by a pool of worker
    tasks, highest priority first. Delayed entries, cron-repeated entries and
    backed-off redeliveries are promoted by a scheduler loop that scans every
    ``poll_interval`` seconds.

    WARNING: entries live in process memory and do not survive a restart.
    """

    def __init__(
        self,
        concurrency: int = 4,
        poll_interval: float = 1.0,
        backoff_base: float = 2.0,
        keep_completed: int = 100,
        keep_failed: int = 50,
    ):
        self.concurrency: int = concurrency
        self.poll_interval: float = poll_interval
        self.backoff_base: float = backoff_base
        self.keep_completed: int = keep_completed
        self.keep_failed: int = keep_failed
        self.is_running: bool = False
        self.scheduler_task: Optional[asyncio.Task] = None
        self.worker_tasks: List[asyncio.Task] = []
        self._handler: Optional[DequeueHandler] = None
        self._entries: Dict[str, QueueEntry] = {}
        self._ready: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._finished: Dict[EntryState, Deque[str]] = {
            EntryState.COMPLETED: deque(),
            EntryState.FAILED: deque(),
        }

    def on_dequeue(self, handler: DequeueHandler) -> None:
        self._handler = handler

    async def start(self):
        if self._handler is None:
            raise RuntimeError("No dequeue handler registered")
        if not self.is_running:
            self.is_running = True
            self.scheduler_task = asyncio.create_task(self._scheduler_loop())
            self.worker_tasks = [
                asyncio.create_task(self._worker_loop()) for _ in range(self.concurrency)
            ]
            logger.info("InMemoryTaskQueue started with %d workers", self.concurrency)

    async def stop(self):
        if self.is_running:
            self.is_running = False
            tasks = [t for t in [self.scheduler_task, *self.worker_tasks] if t]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.scheduler_task = None
            self.worker_tasks = []
            logger.info("InMemoryTaskQueue stopped")

    async def enqueue(self, job_id: str, options: EnqueueOptions) -> str:
        now = utc_now()
        entry = QueueEntry(id=f"q_{uuid.uuid4().hex[:12]}", job_id=job_id, options=options, state=EntryState.WAITING)
        if options.repeat:
            entry.state = EntryState.REPEATING
            entry.run_at = next_cron_run(validate_cron(options.repeat), now)
        elif options.delay and options.delay > timedelta(0):
            entry.state = EntryState.DELAYED
            entry.run_at = now + options.delay

        self._entries[entry.id] = entry
        if entry.state == EntryState.WAITING:
            self._push(entry)
        logger.debug("Queued %s for job %s (%s)", entry.id, job_id, entry.state.value)
        return entry.id

    async def cancel(self, queue_id: str) -> None:
        entry = self._entries.pop(queue_id, None)
        if entry is not None:
            logger.debug("Removed %s (job %s) from queue", queue_id, entry.job_id)

    async def stats(self) -> QueueStats:
        counts = {state: 0 for state in EntryState}
        for entry in self._entries.values():
            counts[entry.state] += 1
        return QueueStats(
            waiting=counts[EntryState.WAITING],
            active=counts[EntryState.ACTIVE],
            delayed=counts[EntryState.DELAYED],
            repeating=counts[EntryState.REPEATING],
            completed=counts[EntryState.COMPLETED],
            failed=counts[EntryState.FAILED],
        )

    def get_entry(self, queue_id: str) -> Optional[QueueEntry]:
        return self._entries.get(queue_id)

    async def wait_idle(self, timeout: float = 10.0) -> None:
        """
        Block until nothing is waiting, delayed or running.
        """
        async def _idle():
            while any(e.state in _PENDING_STATES for e in self._entries.values()):
                await asyncio.sleep(min(self.poll_interval, 0.05))

        await asyncio.wait_for(_idle(), timeout)

    def _push(self, entry: QueueEntry) -> None:
        entry.state = EntryState.WAITING
        self._ready.put_nowait((-entry.options.priority, next(self._sequence), entry.id))

    def _promote_due(self, now: datetime) -> None:
        for entry in list(self._entries.values()):
            if entry.run_at is None or entry.run_at > now:
                continue
            if entry.state == EntryState.DELAYED:
                self._push(entry)
            elif entry.state == EntryState.REPEATING:
                entry.fires += 1
                delivery = QueueEntry(
                    id=f"{entry.id}:{entry.fires}",
                    job_id=entry.job_id,
                    options=entry.options.model_copy(update={"repeat": None, "delay": None}),
                    state=EntryState.WAITING,
                )
                self._entries[delivery.id] = delivery
                self._push(delivery)
                entry.run_at = next_cron_run(entry.options.repeat, now)

    async def _scheduler_loop(self):
        try:
            while self.is_running:
                try:
                    self._promote_due(utc_now())
                except Exception:
                    logger.exception("Error in queue scheduler loop")
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            pass

    async def _worker_loop(self):
        try:
            while True:
                _, _, entry_id = await self._ready.get()
                try:
                    entry = self._entries.get(entry_id)
                    if entry is not None and entry.state == EntryState.WAITING:
                        await self._deliver(entry)
                finally:
                    self._ready.task_done()
        except asyncio.CancelledError:
            pass

    async def _deliver(self, entry: QueueEntry) -> None:
        entry.state = EntryState.ACTIVE
        entry.attempts_made += 1
        try:
            await self._handler(entry.job_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            entry.last_error = str(e)
            if entry.id not in self._entries:
                return
            if is_retryable(e) and entry.attempts_made < entry.options.max_attempts:
                delay = backoff_delay(self.backoff_base, entry.attempts_made)
                entry.state = EntryState.DELAYED
                entry.run_at = utc_now() + timedelta(seconds=delay)
                logger.warning(
                    "Job %s attempt %d/%d failed: %s; redelivering in %.1fs",
                    entry.job_id, entry.attempts_made, entry.options.max_attempts, e, delay,
                )
            else:
                logger.error("Job %s failed after %d attempt(s): %s", entry.job_id, entry.attempts_made, e)
                self._finish(entry, EntryState.FAILED)
        else:
            self._finish(entry, EntryState.COMPLETED)

    def _finish(self, entry: QueueEntry, state: EntryState) -> None:
        entry.state = state
        if entry.id not in self._entries:
            return
        keep = self.keep_completed if state == EntryState.COMPLETED else self.keep_failed
        finished = self._finished[state]
        finished.append(entry.id)
        while len(finished) > keep:
            self._entries.pop(finished.popleft(), None)
