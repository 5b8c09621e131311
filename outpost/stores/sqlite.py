"""SQLite-backed durable message store.

Records live in a single ``reliable_message`` table in an embedded database
file, so pending messages survive process restarts. Timestamps are stored as
integer microseconds since the Unix epoch (UTC), which keeps range queries
and ordering exact.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from outpost.core.message import MessageRecord, MessageStatus, utc_now
from outpost.stores.base import (
    DEFAULT_BATCH_LIMIT,
    DuplicateMessageIdError,
    StoreError,
    StoreUnavailableError,
)

logger = logging.getLogger("outpost.stores.sqlite")

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_MICROSECOND = timedelta(microseconds=1)

_TERMINAL = tuple(s.value for s in MessageStatus if s.is_terminal)

_COLUMNS = (
    "id, message_id, message_type, destination, content, status, retry_count, "
    "max_retry, next_retry_time, create_time, update_time, error_message"
)


def _to_micros(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return (value - _EPOCH) // _MICROSECOND


def _from_micros(value: int) -> datetime:
    return _EPOCH + timedelta(microseconds=value)


def _row_to_record(row: aiosqlite.Row) -> MessageRecord:
    try:
        return MessageRecord(
            id=row["id"],
            message_id=row["message_id"],
            message_type=row["message_type"],
            destination=row["destination"],
            content=row["content"],
            status=MessageStatus(row["status"]),
            retry_count=row["retry_count"],
            max_retry=row["max_retry"],
            next_retry_time=_from_micros(row["next_retry_time"]),
            create_time=_from_micros(row["create_time"]),
            update_time=_from_micros(row["update_time"]),
            error_message=row["error_message"],
        )
    except (ValueError, TypeError) as e:
        # pydantic's ValidationError is a ValueError
        raise StoreError(f"corrupt row for {row['message_id']}: {e}", original=e) from e


def _rows_to_records(rows: list[aiosqlite.Row]) -> list[MessageRecord]:
    """Decode rows, skipping unreadable ones so one bad row cannot block a batch."""
    records = []
    for row in rows:
        try:
            records.append(_row_to_record(row))
        except StoreError as e:
            logger.error(f"Skipping unreadable record: {e}", extra={"message_id": row["message_id"]})
    return records


class SqliteMessageStore:
    """Durable store on an embedded SQLite database file.

    One connection is shared by all callers; an asyncio.Lock serializes
    statement/commit pairs so each update is applied atomically.

    Args:
        path: Database file path. ``":memory:"`` gives a non-durable database.
        table: Table name.
        busy_timeout: Seconds to wait on a locked database file.
    """

    def __init__(
        self,
        path: str | Path = "reliable_message.db",
        table: str = "reliable_message",
        busy_timeout: float = 30.0,
    ) -> None:
        if not table.isidentifier():
            raise ValueError(f"table must be a valid identifier, got {table!r}")
        self.path = str(path)
        self.table = table
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._open_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self) -> None:
        async with self._open_lock:
            if self._conn is not None:
                return

            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)

            try:
                conn = await aiosqlite.connect(self.path, timeout=self._busy_timeout)
            except (aiosqlite.Error, OSError) as e:
                raise StoreUnavailableError(
                    f"cannot open message database {self.path}: {e}", original=e
                ) from e

            try:
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA synchronous=NORMAL")
                await conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self.table} (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        message_id TEXT UNIQUE NOT NULL,
                        message_type TEXT NOT NULL,
                        destination TEXT NOT NULL,
                        content TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        retry_count INTEGER NOT NULL DEFAULT 0,
                        max_retry INTEGER NOT NULL DEFAULT 3,
                        next_retry_time INTEGER NOT NULL,
                        create_time INTEGER NOT NULL,
                        update_time INTEGER NOT NULL,
                        error_message TEXT
                    )
                    """
                )
                await conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{self.table}_due "
                    f"ON {self.table} (status, next_retry_time)"
                )
                await conn.commit()
            except aiosqlite.Error as e:
                await conn.close()
                raise StoreUnavailableError(
                    f"cannot initialize message table in {self.path}: {e}", original=e
                ) from e

            self._conn = conn
            logger.info(f"Opened message store at {self.path}")

    async def close(self) -> None:
        async with self._open_lock:
            if self._conn is None:
                return
            conn, self._conn = self._conn, None
            async with self._lock:
                await conn.close()
            logger.info(f"Closed message store at {self.path}")

    def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreUnavailableError(f"message store {self.path} is not open")
        return self._conn

    async def _write(self, sql: str, params: tuple[Any, ...]) -> int:
        """Execute one write statement and commit. Returns the affected row count."""
        conn = self._connection()
        async with self._lock:
            try:
                cursor = await conn.execute(sql, params)
                await conn.commit()
                return cursor.rowcount
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StoreError(f"write failed: {e}", original=e) from e

    async def _read(self, sql: str, params: tuple[Any, ...]) -> list[aiosqlite.Row]:
        conn = self._connection()
        async with self._lock:
            try:
                async with conn.execute(sql, params) as cursor:
                    return list(await cursor.fetchall())
            except aiosqlite.Error as e:
                raise StoreError(f"read failed: {e}", original=e) from e

    async def insert(self, record: MessageRecord) -> MessageRecord:
        conn = self._connection()
        async with self._lock:
            try:
                cursor = await conn.execute(
                    f"""
                    INSERT INTO {self.table} (
                        message_id, message_type, destination, content, status,
                        retry_count, max_retry, next_retry_time, create_time,
                        update_time, error_message
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.message_id,
                        record.message_type,
                        record.destination,
                        record.content,
                        record.status.value,
                        record.retry_count,
                        record.max_retry,
                        _to_micros(record.next_retry_time),
                        _to_micros(record.create_time),
                        _to_micros(record.update_time),
                        record.error_message,
                    ),
                )
                await conn.commit()
            except aiosqlite.IntegrityError as e:
                await conn.rollback()
                raise DuplicateMessageIdError(record.message_id) from e
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StoreError(f"insert failed: {e}", original=e) from e

        return record.model_copy(update={"id": cursor.lastrowid})

    async def find_due_for_retry(
        self, now: datetime, limit: int = DEFAULT_BATCH_LIMIT
    ) -> list[MessageRecord]:
        rows = await self._read(
            f"SELECT {_COLUMNS} FROM {self.table} "
            "WHERE status = ? AND next_retry_time <= ? "
            "ORDER BY create_time ASC, id ASC LIMIT ?",
            (MessageStatus.PENDING.value, _to_micros(now), limit),
        )
        return _rows_to_records(rows)

    async def find_by_message_id(self, message_id: str) -> MessageRecord | None:
        rows = await self._read(
            f"SELECT {_COLUMNS} FROM {self.table} WHERE message_id = ?",
            (message_id,),
        )
        return _row_to_record(rows[0]) if rows else None

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        error_message: str | None,
        retry_count: int | None = None,
    ) -> bool:
        updated = await self._write(
            f"UPDATE {self.table} SET status = ?, error_message = ?, "
            "retry_count = COALESCE(?, retry_count), update_time = ? "
            "WHERE message_id = ? AND status NOT IN (?, ?)",
            (
                status.value,
                error_message,
                retry_count,
                _to_micros(utc_now()),
                message_id,
                *_TERMINAL,
            ),
        )
        return updated > 0

    async def update_retry(
        self,
        message_id: str,
        retry_count: int,
        next_retry_time: datetime,
        error_message: str | None = None,
    ) -> bool:
        updated = await self._write(
            f"UPDATE {self.table} SET retry_count = ?, next_retry_time = ?, "
            "error_message = ?, update_time = ? "
            "WHERE message_id = ? AND status NOT IN (?, ?)",
            (
                retry_count,
                _to_micros(next_retry_time),
                error_message,
                _to_micros(utc_now()),
                message_id,
                *_TERMINAL,
            ),
        )
        return updated > 0

    async def find_by_status(
        self, status: MessageStatus, limit: int = DEFAULT_BATCH_LIMIT
    ) -> list[MessageRecord]:
        rows = await self._read(
            f"SELECT {_COLUMNS} FROM {self.table} WHERE status = ? "
            "ORDER BY create_time ASC, id ASC LIMIT ?",
            (status.value, limit),
        )
        return _rows_to_records(rows)

    async def delete(self, message_id: str) -> bool:
        deleted = await self._write(
            f"DELETE FROM {self.table} WHERE message_id = ?", (message_id,)
        )
        return deleted > 0

    async def count_by_status(self) -> dict[MessageStatus, int]:
        rows = await self._read(
            f"SELECT status, COUNT(*) AS n FROM {self.table} GROUP BY status", ()
        )
        counts = {status: 0 for status in MessageStatus}
        for row in rows:
            counts[MessageStatus(row["status"])] = row["n"]
        return counts
