from datetime import datetime
from typing import Any, Collection, Dict, List, Optional, Protocol

from job_scheduler.domain.job import Job, JobStatus, JobType
from job_scheduler.domain.job_log import JobLog, LogLevel
from job_scheduler.domain.stats import DailyJobMetrics, JobStats


class Storage(Protocol):
    async def create_tables(self) -> None:
        """Create the schema if it does not exist."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...

    async def ping(self) -> None:
        """Run a trivial read; raises if the store cannot be reached."""
        ...

    async def create_job(self, job: Job) -> str:
        """Persist a new job and return its ID."""
        ...

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Retrieve a job by its ID."""
        ...

    async def find_job(self, job_id: str, owner: str) -> Optional[Job]:
        """Retrieve a job by its ID only if it belongs to ``owner``."""
        ...

    async def update_job(
        self,
        job_id: str,
        values: Dict[str, Any],
        expected_statuses: Optional[Collection[JobStatus]] = None,
    ) -> Optional[Job]:
        """
        Atomically write ``values`` onto a job.

        When ``expected_statuses`` is given the write only happens if the
        stored status is one of them at write time. Returns the updated job,
        or None if the job is missing or its status did not match.
        """
        ...

    async def list_jobs(
        self,
        owner: Optional[str] = None,
        status: Optional[JobStatus] = None,
        type: Optional[JobType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs newest first."""
        ...

    async def list_recurring_active_jobs(self) -> List[Job]:
        """List recurring jobs whose status is pending or active."""
        ...

    async def append_job_log(self, entry: JobLog) -> JobLog:
        """Append a log entry and return it with its assigned ID."""
        ...

    async def list_job_logs(
        self,
        job_id: str,
        level: Optional[LogLevel] = None,
        limit: int = 50,
        offset: int = 0,
        newest_first: bool = False,
    ) -> List[JobLog]:
        """List log entries of a job in creation order."""
        ...

    async def job_stats(self, owner: Optional[str] = None, since: Optional[datetime] = None) -> JobStats:
        """
        Count jobs per status and aggregate execution times.

        When ``since`` is given the result also carries the activity recorded
        from that instant on.
        """
        ...

    async def job_metrics(self, since: datetime, owner: Optional[str] = None) -> List[DailyJobMetrics]:
        """Count jobs created since ``since`` per UTC day and status, oldest day first."""
        ...
