"""
Job Scheduling System

This module defines the core concepts and components of a job scheduling system.

Core Concepts:

Job:
    A Job is a unit of work submitted by an owner. Its type decides when it
    runs: immediately, at a scheduled instant, after a delay, or repeatedly on
    a cron schedule. Its status follows a fixed lifecycle:
    pending -> active -> completed | failed, failed -> pending on manual
    retry, and any non-terminal status -> cancelled.

Recurring instance:
    A recurring Job is a template. Every time its cron schedule fires, a new
    immediate Job is spawned from it, tagged ``recurring-instance`` and linked
    back through ``parent_id``. Instances run like any other immediate job.

Job Log:
    An append-only audit trail written while a Job executes.

Components:
    - JobOrchestrator: validates owner requests and moves jobs through the lifecycle.
    - QueueAdapter: turns a Job into a delayed, repeating or immediate queue entry.
    - RecurringScheduleRegistry: owns the cron timers that spawn recurring instances.
    - JobExecutor: runs one queue delivery and records its outcome.
    - JobScheduler: wires all of the above from Settings.
"""

from .config import Settings, configure_logging, get_settings
from .domain import HealthStatus, Job, JobLog, JobPatch, JobSpec, JobStatus, JobType, LogLevel, MetricsPeriod
from .errors import (
    InvalidCronError,
    InvalidScheduleError,
    InvalidStateError,
    JobGoneError,
    JobSchedulerError,
    NotFoundError,
    QueueUnavailableError,
    RetryExhaustedError,
    ValidationError,
)
from .scheduler import JobScheduler

__all__ = [
    "Settings",
    "configure_logging",
    "get_settings",
    "Job",
    "JobLog",
    "JobPatch",
    "JobSpec",
    "JobStatus",
    "JobType",
    "LogLevel",
    "HealthStatus",
    "MetricsPeriod",
    "InvalidCronError",
    "InvalidScheduleError",
    "InvalidStateError",
    "JobGoneError",
    "JobSchedulerError",
    "NotFoundError",
    "QueueUnavailableError",
    "RetryExhaustedError",
    "ValidationError",
    "JobScheduler",
]
