"""Structured JSON logging for outpost.

Every outpost logger writes one JSON object per line. Message-level fields
(``message_id``, ``message_type``, ``status``, ``retry_count``) sit at the top
level of the object so log pipelines can filter on them directly.
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any

# Attributes every LogRecord carries; anything else on a record came from extra=
_STANDARD_LOGRECORD_KEYS: frozenset[str] = frozenset(
    logging.LogRecord(
        name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
    ).__dict__.keys()
)

_MESSAGE_FIELDS = ("message_id", "message_type", "status", "retry_count")


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line stamped with UTC time."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for field in _MESSAGE_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        for key, value in vars(record).items():
            if key not in _STANDARD_LOGRECORD_KEYS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data["exc_info"] = self.formatException(record.exc_info)

        try:
            return json.dumps(log_data, default=str)
        except (TypeError, ValueError):
            # e.g. circular extras
            return str(log_data)


def _setup_json_handler(logger: logging.Logger, level: int | str) -> None:
    # One stream handler per logger, however often it is configured
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def configure_engine_logger(level: int | str = logging.INFO) -> logging.Logger:
    """Return the ``outpost.engine`` logger, set to level and emitting JSON."""
    logger = logging.getLogger("outpost.engine")
    _setup_json_handler(logger, level)
    return logger


def get_logger(name: str = "outpost", level: int | str = logging.INFO) -> logging.Logger:
    """Return logger name set to level and emitting JSON.

    Calling it again for the same name only changes the level.
    """
    logger = logging.getLogger(name)
    _setup_json_handler(logger, level)
    return logger


def record_fields(record: Any) -> dict[str, Any]:
    """The ``extra`` dict identifying a message record in a log line."""
    return {
        "message_id": record.message_id,
        "message_type": record.message_type,
        "status": record.status.value,
        "retry_count": record.retry_count,
    }
