from dataclasses import dataclass
from typing import Any


@dataclass
class EnqueueParams:
    job_type: str
    payload: Any | None
    priority: int
    max_attempts: int
    delay_ms: int
    timeout_ms: int | None
