from .job import (
    ALLOWED_TRANSITIONS,
    RECURRING_INSTANCE_TAG,
    TERMINAL_STATUSES,
    Job,
    JobPatch,
    JobSpec,
    JobStatus,
    JobType,
    can_transition,
    sources_of,
    utc_now,
)
from .job_log import JobLog, LogLevel
from .stats import (
    DailyJobMetrics,
    HealthReport,
    HealthStatus,
    JobMetrics,
    JobStats,
    MetricsPeriod,
    QueueStats,
    RecentActivity,
    SchedulerStats,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "RECURRING_INSTANCE_TAG",
    "TERMINAL_STATUSES",
    "Job",
    "JobPatch",
    "JobSpec",
    "JobStatus",
    "JobType",
    "DailyJobMetrics",
    "HealthReport",
    "HealthStatus",
    "JobLog",
    "JobMetrics",
    "JobStats",
    "LogLevel",
    "MetricsPeriod",
    "QueueStats",
    "RecentActivity",
    "SchedulerStats",
    "can_transition",
    "sources_of",
    "utc_now",
]
