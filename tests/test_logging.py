"""Tests for structured logging output of the delivery engine."""

import json
import logging
import sys

import pytest

from outpost.core.engine import DeliveryEngine
from outpost.core.logging import JSONFormatter, configure_engine_logger, get_logger
from outpost.core.message import MessageRecord


class LogCapture(logging.Handler):
    """Custom handler to capture log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def log_capture():
    """Capture records from the outpost.engine logger."""
    logger = logging.getLogger("outpost.engine")
    handler = LogCapture()
    handler.setLevel(logging.DEBUG)
    original_level = logger.level
    logger.addHandler(handler)
    yield handler
    logger.removeHandler(handler)
    logger.setLevel(original_level)


def make_record(**overrides) -> MessageRecord:
    fields = {"message_type": "feishu", "destination": "hook", "content": "hi"}
    fields.update(overrides)
    return MessageRecord(**fields)


# =============================================================================
# Engine log events
# =============================================================================


async def test_delivery_logs_carry_message_fields(log_capture, memory_store, registry):
    registry.register("feishu", lambda d, c: True)
    engine = DeliveryEngine(memory_store, registry)
    record = await memory_store.insert(make_record())

    await engine.process(record)

    sent = [r for r in log_capture.records if r.getMessage().startswith("Message sent successfully")]
    assert len(sent) == 1
    assert sent[0].levelno == logging.INFO
    assert sent[0].message_id == record.message_id
    assert sent[0].message_type == "feishu"
    assert sent[0].status == "SENT"


async def test_retry_is_logged_as_warning(log_capture, memory_store, registry):
    registry.register("feishu", lambda d, c: False)
    engine = DeliveryEngine(memory_store, registry)
    record = await memory_store.insert(make_record())

    await engine.process(record)

    warnings = [r for r in log_capture.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert warnings[0].retry_count == 1
    assert warnings[0].error == "handler reported failure"
    assert "retry 1/3" in warnings[0].getMessage()


async def test_dead_message_is_logged_as_error(log_capture, memory_store, registry):
    registry.register("feishu", lambda d, c: False)
    engine = DeliveryEngine(memory_store, registry)
    record = await memory_store.insert(make_record(max_retry=1))

    await engine.process(record)

    errors = [r for r in log_capture.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
    assert errors[0].status == "DEAD"
    assert errors[0].retry_count == 1
    assert "failed permanently" in errors[0].getMessage()


# =============================================================================
# Formatter
# =============================================================================


def test_json_formatter_output_shape():
    record = logging.LogRecord(
        name="outpost.engine",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Delivering %s",
        args=("MSG_1",),
        exc_info=None,
    )
    record.message_id = "MSG_1"
    record.retry_count = 2
    record.batch = 4

    data = json.loads(JSONFormatter().format(record))

    assert data["level"] == "INFO"
    assert data["logger"] == "outpost.engine"
    assert data["message"] == "Delivering MSG_1"
    assert data["message_id"] == "MSG_1"
    assert data["retry_count"] == 2
    assert data["batch"] == 4
    assert data["timestamp"].endswith("+00:00")


def test_json_formatter_includes_exception():
    try:
        raise RuntimeError("store exploded")
    except RuntimeError:
        exc_info = sys.exc_info()

    record = logging.LogRecord(
        name="outpost.engine",
        level=logging.ERROR,
        pathname=__file__,
        lineno=1,
        msg="Scavenger cycle failed",
        args=(),
        exc_info=exc_info,
    )

    data = json.loads(JSONFormatter().format(record))

    assert "RuntimeError: store exploded" in data["exc_info"]


def test_loggers_are_configured_once():
    first = configure_engine_logger(logging.DEBUG)
    handlers = list(first.handlers)
    second = configure_engine_logger("WARNING")

    assert first is second
    assert second.handlers == handlers
    assert second.level == logging.WARNING
    assert not second.propagate

    service_logger = get_logger("outpost.service")
    assert isinstance(service_logger.handlers[0].formatter, JSONFormatter)
