"""Redis-backed durable message store.

Layout (all keys share ``key_prefix``):
- ``<prefix>:msg:<message_id>``: JSON document of the record
- ``<prefix>:due``: sorted set of PENDING message ids scored by next_retry_time
- ``<prefix>:pending``: sorted set of PENDING message ids scored by create_time
- ``<prefix>:all``: sorted set of every message id scored by create_time
- ``<prefix>:seq``: counter for surrogate ids

Every mutation runs as a WATCH/MULTI transaction so a record and its index
entries always change together. Durability follows the Redis server's
persistence settings (AOF or RDB).
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any
from urllib.parse import urlparse, urlunparse

from pydantic import ValidationError
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError, WatchError

from outpost.core.message import MessageRecord, MessageStatus, utc_now
from outpost.stores.base import (
    DEFAULT_BATCH_LIMIT,
    DuplicateMessageIdError,
    StoreError,
    StoreUnavailableError,
)

logger = logging.getLogger("outpost.stores.redis")

# Optimistic transactions retry this many times before giving up
_MAX_TX_RETRIES = 16

# Ids fetched per round trip when walking an index
_SCAN_CHUNK = 500


def _sanitize_url(url: str) -> str:
    """Hide the password of a Redis URL before it reaches a log line."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username or ''}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


def _score(value: datetime) -> float:
    return value.timestamp()


def _decode(message_id: str, raw: str) -> MessageRecord:
    try:
        return MessageRecord.model_validate_json(raw)
    except ValidationError as e:
        raise StoreError(f"corrupt message document {message_id}: {e}", original=e) from e


class RedisMessageStore:
    """Durable store on a Redis server.

    Args:
        redis_url: Redis connection URL.
        key_prefix: Prefix for every key this store touches.
        pool_size: Connection pool size.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "outpost",
        pool_size: int = 10,
    ) -> None:
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.key_prefix = key_prefix
        self._pool_size = pool_size
        self._redis: Redis | None = None
        self._conn_lock = asyncio.Lock()

        self._due_key = f"{key_prefix}:due"
        self._pending_key = f"{key_prefix}:pending"
        self._all_key = f"{key_prefix}:all"
        self._seq_key = f"{key_prefix}:seq"

    def _msg_key(self, message_id: str) -> str:
        return f"{self.key_prefix}:msg:{message_id}"

    async def open(self) -> None:
        async with self._conn_lock:
            if self._redis is not None:
                return

            pool = ConnectionPool.from_url(
                self._url, max_connections=self._pool_size, decode_responses=True
            )
            client = Redis(connection_pool=pool)
            try:
                await client.ping()
            except (RedisError, OSError) as e:
                await client.aclose()
                await pool.disconnect()
                raise StoreUnavailableError(
                    f"cannot connect to Redis at {self._url_safe}: {e}", original=e
                ) from e

            self._redis = client
            logger.info(f"Connected to Redis at {self._url_safe}")

    async def close(self) -> None:
        async with self._conn_lock:
            if self._redis is None:
                return
            client, self._redis = self._redis, None
            await client.aclose()
            await client.connection_pool.disconnect()
            logger.info("Closed Redis connection")

    def _client(self) -> Redis:
        if self._redis is None:
            raise StoreUnavailableError(f"Redis store at {self._url_safe} is not open")
        return self._redis

    async def insert(self, record: MessageRecord) -> MessageRecord:
        client = self._client()
        key = self._msg_key(record.message_id)

        for _ in range(_MAX_TX_RETRIES):
            try:
                async with client.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    if await pipe.exists(key):
                        raise DuplicateMessageIdError(record.message_id)
                    stored = record.model_copy(update={"id": await client.incr(self._seq_key)})

                    pipe.multi()
                    pipe.set(key, stored.model_dump_json())
                    created = _score(stored.create_time)
                    pipe.zadd(self._all_key, {stored.message_id: created})
                    if stored.status is MessageStatus.PENDING:
                        pipe.zadd(self._pending_key, {stored.message_id: created})
                        pipe.zadd(self._due_key, {stored.message_id: _score(stored.next_retry_time)})
                    await pipe.execute()
                    return stored
            except WatchError:
                continue
            except RedisError as e:
                raise StoreError(f"insert failed: {e}", original=e) from e

        raise StoreError(f"insert of {record.message_id} kept conflicting after {_MAX_TX_RETRIES} tries")

    async def _load(self, message_ids: list[str]) -> list[MessageRecord]:
        """Fetch documents for message_ids, skipping missing and corrupt ones."""
        if not message_ids:
            return []
        raw = await self._client().mget([self._msg_key(mid) for mid in message_ids])
        records = []
        for message_id, doc in zip(message_ids, raw):
            if doc is None:
                continue
            try:
                records.append(_decode(message_id, doc))
            except StoreError as e:
                logger.error(f"Skipping unreadable record: {e}", extra={"message_id": message_id})
        return records

    async def _walk(self, index_key: str) -> AsyncIterator[list[str]]:
        """Yield the members of a sorted set in score order, one chunk at a time.

        Index paging can miss a member that moves while the walk is in
        progress; callers pick it up on their next query.
        """
        client = self._client()
        start = 0
        while True:
            ids = await client.zrange(index_key, start, start + _SCAN_CHUNK - 1)
            if ids:
                yield ids
            if len(ids) < _SCAN_CHUNK:
                return
            start += _SCAN_CHUNK

    async def find_due_for_retry(
        self, now: datetime, limit: int = DEFAULT_BATCH_LIMIT
    ) -> list[MessageRecord]:
        cutoff = _score(now)
        due: list[MessageRecord] = []
        try:
            async for ids in self._walk(self._pending_key):
                retry_at = await self._client().zmscore(self._due_key, ids)
                ready = [mid for mid, at in zip(ids, retry_at) if at is not None and at <= cutoff]
                due.extend(r for r in await self._load(ready) if r.is_due(now))
                if len(due) >= limit:
                    break
        except RedisError as e:
            raise StoreError(f"due query failed: {e}", original=e) from e

        due.sort(key=lambda r: (r.create_time, r.id or 0))
        return due[:limit]

    async def find_by_message_id(self, message_id: str) -> MessageRecord | None:
        try:
            raw = await self._client().get(self._msg_key(message_id))
        except RedisError as e:
            raise StoreError(f"read failed: {e}", original=e) from e
        return _decode(message_id, raw) if raw is not None else None

    async def _mutate(
        self,
        message_id: str,
        change: Callable[[MessageRecord], dict[str, Any]],
    ) -> bool:
        """Apply change to a non-terminal record in one optimistic transaction."""
        client = self._client()
        key = self._msg_key(message_id)

        for _ in range(_MAX_TX_RETRIES):
            try:
                async with client.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return False
                    current = _decode(message_id, raw)
                    if current.status.is_terminal:
                        return False

                    updated = MessageRecord(
                        **{**current.model_dump(), **change(current), "update_time": utc_now()}
                    )

                    pipe.multi()
                    pipe.set(key, updated.model_dump_json())
                    if updated.status is MessageStatus.PENDING:
                        pipe.zadd(self._due_key, {message_id: _score(updated.next_retry_time)})
                        pipe.zadd(self._pending_key, {message_id: _score(updated.create_time)})
                    else:
                        pipe.zrem(self._due_key, message_id)
                        pipe.zrem(self._pending_key, message_id)
                    await pipe.execute()
                    return True
            except WatchError:
                logger.debug(f"Concurrent update on {message_id}, retrying transaction")
                continue
            except RedisError as e:
                raise StoreError(f"update failed: {e}", original=e) from e

        raise StoreError(f"update of {message_id} kept conflicting after {_MAX_TX_RETRIES} tries")

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        error_message: str | None,
        retry_count: int | None = None,
    ) -> bool:
        def change(current: MessageRecord) -> dict[str, Any]:
            values: dict[str, Any] = {"status": status, "error_message": error_message}
            if retry_count is not None:
                values["retry_count"] = retry_count
            return values

        return await self._mutate(message_id, change)

    async def update_retry(
        self,
        message_id: str,
        retry_count: int,
        next_retry_time: datetime,
        error_message: str | None = None,
    ) -> bool:
        return await self._mutate(
            message_id,
            lambda current: {
                "retry_count": retry_count,
                "next_retry_time": next_retry_time,
                "error_message": error_message,
            },
        )

    async def find_by_status(
        self, status: MessageStatus, limit: int = DEFAULT_BATCH_LIMIT
    ) -> list[MessageRecord]:
        """Oldest records with status. Walks every message, so O(n) for operators."""
        index = self._pending_key if status is MessageStatus.PENDING else self._all_key
        matching: list[MessageRecord] = []
        try:
            async for ids in self._walk(index):
                matching.extend(r for r in await self._load(ids) if r.status is status)
                if len(matching) >= limit:
                    break
        except RedisError as e:
            raise StoreError(f"status query failed: {e}", original=e) from e

        matching.sort(key=lambda r: (r.create_time, r.id or 0))
        return matching[:limit]

    async def delete(self, message_id: str) -> bool:
        client = self._client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(self._msg_key(message_id))
                pipe.zrem(self._due_key, message_id)
                pipe.zrem(self._pending_key, message_id)
                pipe.zrem(self._all_key, message_id)
                deleted, *_ = await pipe.execute()
        except RedisError as e:
            raise StoreError(f"delete failed: {e}", original=e) from e
        return deleted > 0

    async def count_by_status(self) -> dict[MessageStatus, int]:
        """Per-status totals. Walks every message, so O(n) for operators."""
        counts = {status: 0 for status in MessageStatus}
        try:
            async for ids in self._walk(self._all_key):
                for record in await self._load(ids):
                    counts[record.status] += 1
        except RedisError as e:
            raise StoreError(f"count failed: {e}", original=e) from e
        return counts
