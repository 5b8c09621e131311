"""In-memory message store for development and testing."""

import itertools
from datetime import datetime

from outpost.core.message import MessageRecord, MessageStatus, utc_now
from outpost.stores.base import DEFAULT_BATCH_LIMIT, DuplicateMessageIdError


class InMemoryMessageStore:
    """Dict-backed store holding immutable record snapshots.

    This store is suitable for development and testing. It provides
    no durability guarantees: records are lost if the process terminates.

    Every update replaces a snapshot in a single dict assignment without
    awaiting in between, so updates are atomic with respect to other tasks.
    """

    def __init__(self) -> None:
        self._records: dict[str, MessageRecord] = {}
        self._ids = itertools.count(1)

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def insert(self, record: MessageRecord) -> MessageRecord:
        if record.message_id in self._records:
            raise DuplicateMessageIdError(record.message_id)
        stored = record.model_copy(update={"id": next(self._ids)})
        self._records[stored.message_id] = stored
        return stored

    async def find_due_for_retry(
        self, now: datetime, limit: int = DEFAULT_BATCH_LIMIT
    ) -> list[MessageRecord]:
        due = [r for r in self._records.values() if r.is_due(now)]
        due.sort(key=lambda r: (r.create_time, r.id))
        return due[:limit]

    async def find_by_message_id(self, message_id: str) -> MessageRecord | None:
        return self._records.get(message_id)

    def _apply(self, message_id: str, **changes) -> bool:
        current = self._records.get(message_id)
        if current is None or current.status.is_terminal:
            return False
        changes["update_time"] = utc_now()
        # model_copy skips validation; rebuild so invariants are checked
        self._records[message_id] = MessageRecord(**{**current.model_dump(), **changes})
        return True

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        error_message: str | None,
        retry_count: int | None = None,
    ) -> bool:
        changes: dict = {"status": status, "error_message": error_message}
        if retry_count is not None:
            changes["retry_count"] = retry_count
        return self._apply(message_id, **changes)

    async def update_retry(
        self,
        message_id: str,
        retry_count: int,
        next_retry_time: datetime,
        error_message: str | None = None,
    ) -> bool:
        return self._apply(
            message_id,
            retry_count=retry_count,
            next_retry_time=next_retry_time,
            error_message=error_message,
        )

    async def find_by_status(
        self, status: MessageStatus, limit: int = DEFAULT_BATCH_LIMIT
    ) -> list[MessageRecord]:
        matching = [r for r in self._records.values() if r.status is status]
        matching.sort(key=lambda r: (r.create_time, r.id))
        return matching[:limit]

    async def delete(self, message_id: str) -> bool:
        return self._records.pop(message_id, None) is not None

    async def count_by_status(self) -> dict[MessageStatus, int]:
        counts = {status: 0 for status in MessageStatus}
        for record in self._records.values():
            counts[record.status] += 1
        return counts

    def __len__(self) -> int:
        return len(self._records)
