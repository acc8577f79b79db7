from datetime import timedelta
from typing import Any

from storyq.models.params import EnqueueParams


def to_milliseconds(value: int | float | timedelta | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return int(value.total_seconds() * 1000)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("Duration must be milliseconds or a timedelta")
    return int(value)


def validate_queue_name(name: str) -> None:
    if not name or not isinstance(name, str):
        raise ValueError("Queue name must be a non-empty string")


def validate_job_type(job_type: str) -> None:
    if not job_type or not isinstance(job_type, str):
        raise ValueError("Job type must be a non-empty string")


def validate_job_id(job_id: str) -> None:
    if not isinstance(job_id, str):
        raise ValueError("Job ID must be a string")


def validate_concurrency(concurrency: int) -> None:
    if (
        isinstance(concurrency, bool)
        or not isinstance(concurrency, int)
        or concurrency < 1
    ):
        raise ValueError("concurrency must be a positive integer")


def validate_handler(handler: Any) -> None:
    if not callable(handler):
        raise ValueError("Handler must be callable")


def parse_enqueue_params(
    job_type: str,
    payload: Any | None = None,
    priority: int | None = None,
    max_attempts: int | None = None,
    delay: int | timedelta | None = None,
    timeout: int | timedelta | None = None,
    default_max_attempts: int = 3,
    default_timeout: int | None = None,
) -> EnqueueParams:
    validate_job_type(job_type)

    if priority is None:
        priority = 0
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValueError("priority must be an integer")

    if max_attempts is None:
        max_attempts = default_max_attempts
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
        raise ValueError("max_attempts must be an integer")
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    delay_ms = to_milliseconds(delay) or 0
    if delay_ms < 0:
        raise ValueError("delay cannot be negative")

    timeout_ms = to_milliseconds(timeout)
    if timeout_ms is None:
        timeout_ms = default_timeout
    if timeout_ms is not None and timeout_ms <= 0:
        raise ValueError("timeout must be positive")

    return EnqueueParams(
        job_type=job_type,
        payload=payload,
        priority=priority,
        max_attempts=max_attempts,
        delay_ms=delay_ms,
        timeout_ms=timeout_ms,
    )
