"""Store protocol for durable message records.

The store is the single source of truth for delivery state. The engine never
keeps records between attempts; every decision is read from and written back
to the store, and every write is one atomic update.
"""

from datetime import datetime
from typing import Protocol

from outpost.core.message import MessageRecord, MessageStatus

# Recommended batch size for due-record queries
DEFAULT_BATCH_LIMIT = 100


class StoreError(Exception):
    """Raised when the underlying storage backend fails."""

    def __init__(self, message: str, original: Exception | None = None):
        self.original = original
        super().__init__(message)


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be opened or reached."""


class DuplicateMessageIdError(StoreError):
    """Raised when inserting a record whose message_id already exists."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"message_id already exists: {message_id}")


class MessageStore(Protocol):
    """Protocol defining durable CRUD over message records.

    Update operations only touch non-terminal records (anything but SENT and
    DEAD) and report whether a record was changed.
    """

    async def open(self) -> None:
        """Connect and prepare the schema. Idempotent.

        Raises:
            StoreUnavailableError: If the backing store cannot be opened.
        """
        ...

    async def close(self) -> None:
        """Release resources. Idempotent."""
        ...

    async def insert(self, record: MessageRecord) -> MessageRecord:
        """Persist a new record and return it with its surrogate id assigned.

        Raises:
            DuplicateMessageIdError: If record.message_id already exists.
        """
        ...

    async def find_due_for_retry(
        self, now: datetime, limit: int = DEFAULT_BATCH_LIMIT
    ) -> list[MessageRecord]:
        """Return PENDING records with next_retry_time <= now.

        Ordered by create_time ascending and capped at limit.
        """
        ...

    async def find_by_message_id(self, message_id: str) -> MessageRecord | None:
        ...

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        error_message: str | None,
        retry_count: int | None = None,
    ) -> bool:
        """Set status and error_message (and retry_count, if given) atomically."""
        ...

    async def update_retry(
        self,
        message_id: str,
        retry_count: int,
        next_retry_time: datetime,
        error_message: str | None = None,
    ) -> bool:
        """Record a retry decision atomically; the record stays PENDING."""
        ...

    async def find_by_status(
        self, status: MessageStatus, limit: int = DEFAULT_BATCH_LIMIT
    ) -> list[MessageRecord]:
        """Return records in status, ordered by create_time ascending."""
        ...

    async def delete(self, message_id: str) -> bool:
        """Remove a record for operational cleanup."""
        ...

    async def count_by_status(self) -> dict[MessageStatus, int]:
        ...
