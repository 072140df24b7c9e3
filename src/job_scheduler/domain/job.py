import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_validator


RECURRING_INSTANCE_TAG = "recurring-instance"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize to an aware UTC datetime. Naive values are taken to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobType(str, Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    RECURRING = "recurring"
    DELAYED = "delayed"


class JobStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})

# FAILED -> ACTIVE is the queue redelivering a failed attempt; FAILED -> PENDING
# is a manual retry.
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.ACTIVE, JobStatus.CANCELLED}),
    JobStatus.DELAYED: frozenset({JobStatus.ACTIVE, JobStatus.CANCELLED}),
    JobStatus.ACTIVE: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING, JobStatus.ACTIVE, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def sources_of(target: JobStatus) -> FrozenSet[JobStatus]:
    """
    Return every status from which ``target`` may be reached.
    """
    return frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets)


def _dedupe_tags(tags: List[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for tag in tags:
        tag = tag.strip()
        if tag:
            seen.setdefault(tag, None)
    return list(seen)


class JobSpec(BaseModel):
    """
    A validated job creation request as handed over by the transport layer.
    """
    name: str = Field(..., max_length=100, description="Job name")
    description: Optional[str] = Field(None, max_length=500)
    type: JobType = Field(..., description="Scheduling strategy")
    payload: Dict[str, Any] = Field(..., description="Opaque data interpreted by the payload handler")
    owner: str = Field(..., description="Reference to the owning user")
    scheduled_at: Optional[datetime] = Field(None, description="Run instant, required for scheduled jobs")
    cron_expression: Optional[str] = Field(None, description="Cron expression, required for recurring jobs")
    delay: Optional[timedelta] = Field(None, description="Delay before running, required for delayed jobs")
    priority: int = Field(default=0, ge=-10, le=10, description="Higher is more urgent")
    max_retries: int = Field(default=5, ge=0, le=10)
    tags: List[str] = Field(default_factory=list)

    @field_validator("name")
    def strip_name(cls, v: str) -> str:
        return v.strip()

    @field_validator("scheduled_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @field_validator("tags")
    def dedupe_tags(cls, v: List[str]) -> List[str]:
        return _dedupe_tags(v)


class JobPatch(BaseModel):
    """
    Fields an owner may change on a job that has not started running.
    """
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    scheduled_at: Optional[datetime] = None
    cron_expression: Optional[str] = None
    delay: Optional[timedelta] = None
    priority: Optional[int] = Field(None, ge=-10, le=10)
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    tags: Optional[List[str]] = None

    @field_validator("scheduled_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @field_validator("tags")
    def dedupe_tags(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _dedupe_tags(v) if v is not None else v

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class Job(BaseModel):
    """
    Durable record of a submitted unit of work and its lifecycle state.
    """
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex}", description="Unique job identifier")
    name: str = Field(..., description="Job name")
    description: Optional[str] = None
    type: JobType
    status: JobStatus = JobStatus.PENDING
    payload: Dict[str, Any] = Field(default_factory=dict)
    owner: str
    priority: int = Field(default=0, ge=-10, le=10)
    max_retries: int = Field(default=5, ge=0, le=10)
    current_retries: int = Field(default=0, ge=0)
    queue_id: Optional[str] = Field(None, description="Correlation id assigned by the task queue")
    parent_id: Optional[str] = Field(None, description="Recurring job this instance was spawned from")
    scheduled_at: Optional[datetime] = None
    cron_expression: Optional[str] = None
    delay: Optional[timedelta] = None
    next_run_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    execution_time: Optional[float] = Field(None, description="Handler run time in milliseconds")
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator(
        "scheduled_at", "next_run_at", "started_at", "completed_at", "failed_at", "created_at", "updated_at"
    )
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        # SQLite drops tzinfo on the way back out.
        return ensure_utc(v)

    @classmethod
    def from_spec(cls, spec: JobSpec) -> "Job":
        return cls(**spec.model_dump())

    @property
    def is_recurring(self) -> bool:
        return self.type == JobType.RECURRING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def max_attempts(self) -> int:
        # The queue always makes at least one attempt.
        return max(1, self.max_retries)

    def spawn_instance(self, now: datetime) -> "Job":
        """
        Clone a recurring job into a one-shot immediate instance.
        """
        return Job(
            name=f"{self.name} - {now.isoformat()}"[:100],
            description=self.description,
            type=JobType.IMMEDIATE,
            payload=dict(self.payload),
            owner=self.owner,
            priority=self.priority,
            max_retries=self.max_retries,
            parent_id=self.id,
            tags=_dedupe_tags([*self.tags, RECURRING_INSTANCE_TAG]),
        )
