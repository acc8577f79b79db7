import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Literal


JobStatusValueType = Literal[
    "waiting",
    "processing",
    "completed",
    "failed",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Job:
    id: str
    """The unique identifier for the job.

    Generated at enqueue time as ``{queue}_{epoch_ms}_{suffix}`` where the
    suffix is 9 random lowercase alphanumeric characters. The queue name
    prefix lets an application route a job ID back to its queue.
    """
    queue: str
    """The name of the queue that owns the job."""
    type: str
    """The job type. Selects the handler registered for this type."""
    payload: Any | None = field(default=None)
    """The payload passed to the handler as is."""
    status: JobStatusValueType = field(default="waiting")
    """The status of the job.

    Jobs start as "waiting". When the scheduler hands the job to its handler,
    it becomes "processing". If the handler returns, the job is "completed".
    If the handler raises and no attempts are left, the job is "failed".
    A job that failed with attempts left goes back to "waiting" with a delay.
    """
    priority: int = field(default=0)
    """Higher priority jobs run first. Equal priorities run in FIFO order."""
    attempts: int = field(default=0)
    """The number of failed handler invocations so far.

    Once the job completes, this is the number of the invocation that
    succeeded, i.e. a job that succeeded on its third try has 3 attempts.
    """
    max_attempts: int = field(default=3)
    """The maximum number of handler invocations before the job fails."""
    delay: int = field(default=0)
    """The delay in milliseconds applied before the job becomes eligible.

    Set from the ``delay`` enqueue option initially, then from the
    exponential backoff after each failed attempt.
    """
    timeout: int | None = field(default=None)
    """Handler timeout in milliseconds. None means no timeout."""
    created_at: datetime = field(default_factory=utcnow)
    """The time when the job was enqueued (UTC)."""
    ready_at: datetime = field(default_factory=utcnow)
    """The time when the job becomes eligible for processing (UTC).

    The scheduler never starts a job before this time. While a job waits for
    its ``ready_at`` it stays in the waiting set and does not hold a
    concurrency slot.
    """
    started_at: datetime | None = field(default=None)
    """The time when the latest attempt started (UTC)."""
    completed_at: datetime | None = field(default=None)
    """The time when the job completed (UTC)."""
    failed_at: datetime | None = field(default=None)
    """The time when the job failed permanently (UTC)."""
    result: Any | None = field(default=None)
    """Whatever the handler returned."""
    error: str | None = field(default=None)
    """The error message of the latest failed attempt."""
    error_trace: str | None = field(default=None)
    """The stack trace of the latest failed attempt."""
    _seq: int = field(default=0, repr=False)

    @property
    def finished_at(self) -> datetime | None:
        return self.completed_at or self.failed_at

    @property
    def duration(self) -> float | None:
        """Seconds between the start of the latest attempt and its end."""
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def is_ready(self, now: datetime | None = None) -> bool:
        return self.ready_at <= (now or utcnow())

    def postpone(self, delay_ms: int, now: datetime | None = None) -> None:
        self.delay = delay_ms
        self.ready_at = (now or utcnow()) + timedelta(milliseconds=delay_ms)

    def record_error(self, exception: BaseException) -> None:
        self.error = str(exception) or type(exception).__name__
        self.error_trace = "".join(traceback.format_exception(exception))

    def to_dict(self) -> dict[str, Any]:
        """Represent the job as a JSON friendly dictionary.

        Suitable for status and progress polling endpoints. Timestamps are
        ISO 8601 strings in UTC. The stack trace is left out.
        """

        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "queue": self.queue,
            "type": self.type,
            "payload": self.payload,
            "status": self.status,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "delay": self.delay,
            "created_at": iso(self.created_at),
            "ready_at": iso(self.ready_at),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "failed_at": iso(self.failed_at),
            "result": self.result,
            "error": self.error,
        }
