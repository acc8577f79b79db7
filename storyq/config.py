"""
Queue configuration loaded from environment variables.

Every setting can be overridden with a ``STORYQ_`` prefixed environment
variable or a ``.env`` file, e.g. ``STORYQ_LOG_LEVEL=debug`` or
``STORYQ_DATABASE_URL=sqlite+aiosqlite:///jobs.db``.
"""

from typing import Literal

from pydantic import Field, PositiveInt, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class QueueSettings(BaseSettings):
    """Settings of the storybook generation queues."""

    model_config = SettingsConfigDict(
        env_prefix="STORYQ_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===== Logging =====
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Level of the storyq loggers",
    )
    log_json: bool = Field(
        default=True,
        description="Emit one JSON object per log record",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            v = v.upper()
            return "WARNING" if v == "WARN" else v
        return v

    # ===== Retries =====
    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Default maximum number of attempts per job",
    )
    backoff_base: int = Field(
        default=1000,
        ge=1,
        description="Base of the exponential retry backoff in milliseconds",
    )
    max_retry_delay: PositiveInt | None = Field(
        default=12 * 3600 * 1000,
        description="Upper bound of the retry delay in milliseconds",
    )
    job_timeout: PositiveInt | None = Field(
        default=None,
        description="Default handler timeout in milliseconds (unset: no timeout)",
    )

    # ===== Cleanup =====
    cleanup_interval: float = Field(
        default=3600,
        gt=0,
        description="Seconds between two cleanup sweeps",
    )
    cleanup_max_age: int = Field(
        default=24 * 3600 * 1000,
        ge=0,
        description="Finished jobs older than this many milliseconds are removed",
    )

    # ===== Persistence =====
    database_url: str | None = Field(
        default=None,
        description="Async SQLAlchemy URL of the job store (unset: memory only)",
    )

    # ===== Concurrency =====
    story_concurrency: int = Field(default=2, ge=1)
    image_concurrency: int = Field(default=3, ge=1)
    audio_concurrency: int = Field(default=2, ge=1)
    email_concurrency: int = Field(default=5, ge=1)
