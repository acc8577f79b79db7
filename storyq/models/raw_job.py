import json
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Integer, BigInteger, String, Text
from sqlalchemy.orm import DeclarativeBase, mapped_column, Mapped

from .job import Job


class BaseSQL(DeclarativeBase):
    """Metadata shared by the storyq tables."""


def to_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, timezone.utc)


def serialize(value: Any | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def deserialize(serialized: str | None) -> Any | None:
    if serialized is None:
        return None
    return json.loads(serialized)


class RawJob(BaseSQL):
    """Durable snapshot of a job.

    Timestamps are stored as Unix epoch milliseconds in UTC. The payload and
    the result are stored as JSON text, strings included.
    """

    __tablename__ = "storyq_jobs"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    queue: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="waiting", index=True
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3
    )
    delay: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    timeout: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    ready_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    started_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    completed_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    failed_at: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_trace: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    @staticmethod
    def from_job(job: Job) -> "RawJob":
        return RawJob(
            id=job.id,
            queue=job.queue,
            type=job.type,
            payload=serialize(job.payload),
            status=job.status,
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            delay=job.delay,
            timeout=job.timeout,
            created_at=to_ms(job.created_at),
            ready_at=to_ms(job.ready_at),
            started_at=to_ms(job.started_at),
            completed_at=to_ms(job.completed_at),
            failed_at=to_ms(job.failed_at),
            result=serialize(job.result),
            error=job.error,
            error_trace=job.error_trace,
            seq=job._seq,
        )

    def to_job(self) -> Job:
        return Job(
            id=self.id,
            queue=self.queue,
            type=self.type,
            payload=deserialize(self.payload),
            status=self.status,
            priority=self.priority,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            delay=self.delay,
            timeout=self.timeout,
            created_at=from_ms(self.created_at),
            ready_at=from_ms(self.ready_at),
            started_at=from_ms(self.started_at),
            completed_at=from_ms(self.completed_at),
            failed_at=from_ms(self.failed_at),
            result=deserialize(self.result),
            error=self.error,
            error_trace=self.error_trace,
            _seq=self.seq,
        )
