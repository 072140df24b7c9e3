from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .job import JobStatus, utc_now


class RecentActivity(BaseModel):
    """
    Jobs created, completed and failed since ``since``, with the execution
    times of the jobs completed in that window.
    """
    since: datetime
    created: int = 0
    completed: int = 0
    failed: int = 0
    avg_execution_time: float = 0.0
    min_execution_time: float = 0.0
    max_execution_time: float = 0.0


class JobStats(BaseModel):
    """
    Aggregate view over stored jobs.
    """
    by_status: Dict[JobStatus, int] = Field(default_factory=lambda: {status: 0 for status in JobStatus})
    avg_execution_time: float = 0.0
    min_execution_time: float = 0.0
    max_execution_time: float = 0.0
    recent: Optional[RecentActivity] = None

    @property
    def total(self) -> int:
        return sum(self.by_status.values())


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    repeating: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.delayed + self.repeating + self.completed + self.failed


class SchedulerStats(BaseModel):
    jobs: JobStats
    queue: Optional[QueueStats] = None
    scheduled_recurring: int = 0


class MetricsPeriod(str, Enum):
    HOUR = "1h"
    DAY = "1d"
    WEEK = "7d"
    MONTH = "30d"

    @property
    def window(self) -> timedelta:
        return _PERIOD_WINDOWS[self]


_PERIOD_WINDOWS = {
    MetricsPeriod.HOUR: timedelta(hours=1),
    MetricsPeriod.DAY: timedelta(days=1),
    MetricsPeriod.WEEK: timedelta(days=7),
    MetricsPeriod.MONTH: timedelta(days=30),
}


class DailyJobMetrics(BaseModel):
    """
    Jobs created on one UTC day, counted by their current status.
    """
    day: date
    by_status: Dict[JobStatus, int] = Field(default_factory=dict)

    @property
    def success_rate(self) -> Optional[float]:
        """Percentage of finished jobs that completed, None if none finished."""
        completed = self.by_status.get(JobStatus.COMPLETED, 0)
        finished = completed + self.by_status.get(JobStatus.FAILED, 0)
        if not finished:
            return None
        return completed / finished * 100


class JobMetrics(BaseModel):
    period: MetricsPeriod
    since: datetime
    days: List[DailyJobMetrics] = Field(default_factory=list)


class HealthStatus(str, Enum):
    OK = "OK"
    DEGRADED = "DEGRADED"


class HealthReport(BaseModel):
    status: HealthStatus = HealthStatus.OK
    timestamp: datetime = Field(default_factory=utc_now)
    uptime: float = Field(default=0.0, description="Seconds since the scheduler started")
    storage: str = "connected"
    queue: str = "active"
    queue_stats: Optional[QueueStats] = None
