from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .job import utc_now


class LogLevel(str, Enum):
    ERROR = "error"
    WARN = "warn"
    INFO = "info"
    DEBUG = "debug"


class JobLog(BaseModel):
    """
    Append-only audit entry written while a job executes.
    """
    id: Optional[int] = Field(None, description="Assigned by the store, increases with creation order")
    job_id: str
    level: LogLevel = LogLevel.INFO
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    execution_step: Optional[str] = None
    duration: Optional[float] = Field(None, description="Duration in milliseconds")
    created_at: datetime = Field(default_factory=utc_now)
