"""
Structured logging for the job queues.

The queues log through the standard ``logging`` module and attach the event
fields (queue, job ID, attempt, delay, ...) as record attributes using
``extra``. ``JsonFormatter`` renders them as one JSON object per line.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any


# Attributes every LogRecord has. Anything else was passed through ``extra``.
_RESERVED = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Return the fields attached to a record with ``extra``."""
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED and not key.startswith("_")
    }


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "context": record.name,
            "message": record.getMessage(),
            **record_fields(record),
        }
        if record.exc_info:
            entry["error_trace"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class KeyValueFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = record_fields(record)
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = True,
    logger_name: str = "storyq",
) -> logging.Handler:
    """Attach a stream handler to the storyq logger.

    Calling it again replaces the handler installed by the previous call.

    Returns:
        logging.Handler: The installed handler.
    """
    logger = logging.getLogger(logger_name)
    for existing in list(logger.handlers):
        if getattr(existing, "_storyq", False):
            logger.removeHandler(existing)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter() if json_format else KeyValueFormatter())
    handler._storyq = True
    logger.addHandler(handler)
    logger.setLevel(level)
    return handler
