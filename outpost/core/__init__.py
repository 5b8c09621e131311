"""Core components for outpost reliable message delivery.

Types:
    MessageRecord: Immutable snapshot of a message and its delivery state.
    MessageStatus: PENDING, SENT, FAILED (legacy), DEAD.
    HandlerRegistry: Maps message types to delivery handlers.
    DeliveryResult: Normalized outcome of one delivery attempt.
    RetryPolicy: Exponential backoff (30s, 60s, 120s, ... by default).
    DeliveryEngine: Attempt routine and periodic scavenger.
    ReliableMessageService: Public façade (submit, lifecycle, operator helpers).
    NotifyingTaskRunner: Runs a task and reliably reports completion/failure.
    DeliveryConfig: Validated settings, readable from OUTPOST_* variables.

Errors:
    HandlerNotFoundError: No handler registered for a message type.
"""

from outpost.core.config import DeliveryConfig
from outpost.core.engine import AttemptOutcome, DeliveryEngine, EngineStats
from outpost.core.handler import (
    DeliveryHandler,
    DeliveryResult,
    HandlerNotFoundError,
    HandlerRegistry,
    invoke_handler,
)
from outpost.core.message import (
    DEFAULT_MAX_RETRY,
    MessageRecord,
    MessageStatus,
    generate_message_id,
)
from outpost.core.retry import RetryPolicy
from outpost.core.service import ReliableMessageService
from outpost.core.tasks import NotifyingTaskRunner

__all__ = [
    "AttemptOutcome",
    "DEFAULT_MAX_RETRY",
    "DeliveryConfig",
    "DeliveryEngine",
    "DeliveryHandler",
    "DeliveryResult",
    "EngineStats",
    "HandlerNotFoundError",
    "HandlerRegistry",
    "MessageRecord",
    "MessageStatus",
    "NotifyingTaskRunner",
    "ReliableMessageService",
    "RetryPolicy",
    "generate_message_id",
    "invoke_handler",
]
