from .core import (
    JobQueue,
    AsyncJobStore,
    QueueError,
    HandlerNotFound,
    HandlerTimeout,
    SchedulerInvariantError,
    StoryGenerationError,
)
from .models.job import Job
from .models.queue_stats import QueueStats
from .config import QueueSettings
from .pipeline import StoryPipeline


__all__ = [
    "JobQueue",
    "AsyncJobStore",
    "Job",
    "QueueStats",
    "QueueSettings",
    "StoryPipeline",
    "QueueError",
    "HandlerNotFound",
    "HandlerTimeout",
    "SchedulerInvariantError",
    "StoryGenerationError",
]
