"""Configuration for the job scheduler.

Every field can be set from the environment with the ``JOB_SCHEDULER_``
prefix (``JOB_SCHEDULER_DATABASE_URL``, ``JOB_SCHEDULER_QUEUE_BACKEND`` ...)
or from a ``.env`` file in the working directory.
"""

import logging
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SERVICE_NAME = "job-scheduler"
LOG_FORMAT = "%(asctime)s %(levelname)s [" + SERVICE_NAME + "] %(name)s: %(message)s"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="JOB_SCHEDULER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./jobs.db",
        description="Async SQLAlchemy URL of the job store",
    )

    # Queue
    queue_backend: Literal["memory", "celery"] = "memory"
    broker_url: str = "redis://localhost:6379/0"
    result_backend: Optional[str] = "redis://localhost:6379/1"
    redbeat_redis_url: str = "redis://localhost:6379/2"
    queue_timeout: float = Field(default=5.0, gt=0, description="Seconds before a queue call is abandoned")
    worker_concurrency: int = Field(default=4, ge=1)
    poll_interval: float = Field(default=1.0, gt=0, description="Seconds between in-memory queue scans")
    backoff_base: float = Field(default=2.0, ge=0, description="Seconds before the first redelivery")
    keep_completed: int = Field(default=100, ge=0)
    keep_failed: int = Field(default=50, ge=0)

    # Recurring schedules
    cleanup_interval: float = Field(default=3600.0, gt=0, description="Seconds between stale schedule sweeps")

    # Handlers
    handler_latency_scale: float = Field(default=1.0, ge=0)

    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """
    Install a stream handler on the root logger unless one is configured.
    """
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
