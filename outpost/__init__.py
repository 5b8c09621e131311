"""outpost - Async-first reliable local message delivery for Python."""

from outpost.core import (
    AttemptOutcome,
    DeliveryConfig,
    DeliveryEngine,
    DeliveryHandler,
    DeliveryResult,
    EngineStats,
    HandlerNotFoundError,
    HandlerRegistry,
    MessageRecord,
    MessageStatus,
    NotifyingTaskRunner,
    ReliableMessageService,
    RetryPolicy,
)
from outpost.stores import (
    DuplicateMessageIdError,
    InMemoryMessageStore,
    MessageStore,
    RedisMessageStore,
    SqliteMessageStore,
    StoreError,
    StoreUnavailableError,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "MessageRecord",
    "MessageStatus",
    "ReliableMessageService",
    "DeliveryEngine",
    "AttemptOutcome",
    "EngineStats",
    "NotifyingTaskRunner",
    # Handlers and retry
    "DeliveryHandler",
    "DeliveryResult",
    "HandlerRegistry",
    "HandlerNotFoundError",
    "RetryPolicy",
    "DeliveryConfig",
    # Stores
    "MessageStore",
    "InMemoryMessageStore",
    "SqliteMessageStore",
    "RedisMessageStore",
    "StoreError",
    "StoreUnavailableError",
    "DuplicateMessageIdError",
    # Meta
    "__version__",
]
