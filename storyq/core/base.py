from typing import Any, Awaitable, Callable, TypeVar

from storyq.models.job import Job


Handler = Callable[[Any, Job], Awaitable[Any]]
DecoratedCallable = TypeVar("DecoratedCallable", bound=Handler)


class QueueError(Exception):
    """Base class for all errors raised by storyq."""


class HandlerNotFound(QueueError):
    """No handler is registered for the job type.

    Jobs failing with this error are never retried.
    """

    def __init__(self, job_type: str) -> None:
        super().__init__(f"No handler registered for job type: {job_type}")
        self.job_type = job_type


class HandlerTimeout(QueueError):
    """The handler did not finish within the job timeout."""

    def __init__(self, job_id: str, timeout: int) -> None:
        super().__init__(f"Job {job_id} timed out after {timeout} ms")
        self.job_id = job_id
        self.timeout = timeout


class SchedulerInvariantError(QueueError):
    """A job was found in a state the scheduler never puts it in."""


class StoryGenerationError(QueueError):
    """A storybook generation stage failed for a story."""

    def __init__(
        self, stage: str, message: str, story_id: Any | None = None
    ) -> None:
        super().__init__(f"Story generation failed at {stage}: {message}")
        self.stage = stage
        self.story_id = story_id


class BaseJobQueue:
    """This class exists for proper type hinting and dependency inversion."""

    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    DEFAULT_CONCURRENCY = 3
    DEFAULT_MAX_ATTEMPTS = 3
    DEFAULT_BACKOFF_BASE = 1000
    DEFAULT_MAX_RETRY_DELAY = 12 * 3600 * 1000
    DEFAULT_CLEANUP_MAX_AGE = 24 * 3600 * 1000

    @staticmethod
    def _backoff_delay(
        attempts: int,
        backoff_base: int = DEFAULT_BACKOFF_BASE,
        max_retry_delay: int | None = DEFAULT_MAX_RETRY_DELAY,
    ) -> int:
        """Delay in milliseconds before the attempt after ``attempts`` failures.

        Computed as ``backoff_base * 2 ** attempts`` and clamped to
        ``max_retry_delay`` when one is set.
        """
        planned_delay = backoff_base * 2**attempts
        if max_retry_delay is None:
            return planned_delay
        return min(planned_delay, max_retry_delay)
