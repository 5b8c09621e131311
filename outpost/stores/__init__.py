"""Durable message store implementations."""

from outpost.stores.base import (
    DEFAULT_BATCH_LIMIT,
    DuplicateMessageIdError,
    MessageStore,
    StoreError,
    StoreUnavailableError,
)
from outpost.stores.memory import InMemoryMessageStore
from outpost.stores.redis import RedisMessageStore
from outpost.stores.sqlite import SqliteMessageStore

__all__ = [
    "DEFAULT_BATCH_LIMIT",
    "DuplicateMessageIdError",
    "InMemoryMessageStore",
    "MessageStore",
    "RedisMessageStore",
    "SqliteMessageStore",
    "StoreError",
    "StoreUnavailableError",
]
