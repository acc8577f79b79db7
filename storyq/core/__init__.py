from .queue import JobQueue
from .store import AsyncJobStore
from .base import (
    QueueError,
    HandlerNotFound,
    HandlerTimeout,
    SchedulerInvariantError,
    StoryGenerationError,
)


__all__ = [
    "JobQueue",
    "AsyncJobStore",
    "QueueError",
    "HandlerNotFound",
    "HandlerTimeout",
    "SchedulerInvariantError",
    "StoryGenerationError",
]
