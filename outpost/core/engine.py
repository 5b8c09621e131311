"""Delivery engine for outpost.

The engine drives message records through their state machine:

    PENDING --success--> SENT (terminal)
    PENDING --failure--> PENDING (retry scheduled with backoff)
    PENDING --failure, retries exhausted--> DEAD (terminal)

One attempt routine (``process``) is shared by inline attempts made when a
message is submitted and by the periodic scavenger that picks up due records.

IMPORTANT: the engine keeps no delivery state of its own. Every decision is
read from the store and written back as a single atomic update, so an
abandoned attempt leaves the record exactly as it was.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from outpost.core.handler import DeliveryResult, HandlerNotFoundError, HandlerRegistry, invoke_handler
from outpost.core.logging import configure_engine_logger, record_fields
from outpost.core.message import MessageRecord, MessageStatus, utc_now
from outpost.core.retry import RetryPolicy
from outpost.stores.base import DEFAULT_BATCH_LIMIT, StoreError

if TYPE_CHECKING:
    from outpost.stores.base import MessageStore

# Scavenger defaults
DEFAULT_SCAVENGE_INTERVAL = 30.0
DEFAULT_STOP_GRACE = 5.0


class AttemptOutcome(Enum):
    """Result of running the attempt routine on one record.

    SENT: delivered, record is terminal
    RETRY: failed, retry scheduled, record stays PENDING
    DEAD: failed with retries exhausted, record is terminal
    SKIPPED: not attempted (claimed elsewhere, not due, or no longer PENDING)
    ERROR: store failure, record left untouched for the next cycle
    """

    SENT = "sent"
    RETRY = "retry"
    DEAD = "dead"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class EngineStats:
    """Counters accumulated since the engine was created."""

    cycles: int = 0
    attempts: int = 0
    delivered: int = 0
    retries_scheduled: int = 0
    dead: int = 0
    skipped: int = 0
    store_errors: int = 0
    handler_failures: dict[str, int] = field(default_factory=lambda: defaultdict(int))


class DeliveryEngine:
    """State machine driver and periodic scavenger."""

    def __init__(
        self,
        store: "MessageStore",
        registry: HandlerRegistry,
        retry_policy: RetryPolicy | None = None,
        interval: float = DEFAULT_SCAVENGE_INTERVAL,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        stop_grace: float = DEFAULT_STOP_GRACE,
        concurrency: int = 1,
        handler_timeout: float | None = None,
        clock: Callable[[], datetime] | None = None,
        log_level: int | str = logging.INFO,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if batch_limit < 1:
            raise ValueError(f"batch_limit must be >= 1, got {batch_limit}")
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        self.store = store
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy()
        self.interval = interval
        self.batch_limit = batch_limit
        self.stop_grace = stop_grace
        self.concurrency = concurrency
        self.handler_timeout = handler_timeout
        self._clock = clock or utc_now
        self._log = configure_engine_logger(log_level)
        self._stats = EngineStats()
        self._in_flight: set[str] = set()
        self._running = False
        self._stopping = False
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def now(self) -> datetime:
        return self._clock()

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> EngineStats:
        """Return a copy of current statistics.

        Returns a snapshot that is safe to inspect without affecting internal state.
        """
        return EngineStats(
            cycles=self._stats.cycles,
            attempts=self._stats.attempts,
            delivered=self._stats.delivered,
            retries_scheduled=self._stats.retries_scheduled,
            dead=self._stats.dead,
            skipped=self._stats.skipped,
            store_errors=self._stats.store_errors,
            handler_failures=defaultdict(int, self._stats.handler_failures),
        )

    # ------------------------------------------------------------------
    # Attempt routine
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def claim(self, message_id: str) -> AsyncIterator[bool]:
        """Claim message_id for the duration of the block.

        Yields False if another task already holds the claim. The check and
        the insert happen without an await in between, so two tasks on the
        loop can never both succeed.
        """
        if message_id in self._in_flight:
            yield False
            return
        self._in_flight.add(message_id)
        try:
            yield True
        finally:
            self._in_flight.discard(message_id)

    def is_claimed(self, message_id: str) -> bool:
        return message_id in self._in_flight

    async def process(self, record: MessageRecord) -> AttemptOutcome:
        """Run one delivery attempt for record, if it is still due."""
        async with self.claim(record.message_id) as claimed:
            if not claimed:
                self._stats.skipped += 1
                self._log.debug(
                    f"Message {record.message_id} already in flight, skipping",
                    extra=record_fields(record),
                )
                return AttemptOutcome.SKIPPED
            return await self.process_claimed(record.message_id)

    async def process_claimed(self, message_id: str) -> AttemptOutcome:
        """Attempt routine body for a message_id the caller has already claimed.

        Used directly by callers that claim an id before the record exists, so
        that nothing else can pick it up between insert and first attempt.
        """
        # Re-read: the caller's snapshot may be stale by the time it is claimed
        try:
            current = await self.store.find_by_message_id(message_id)
        except StoreError as e:
            return self._store_failed(message_id, "load", e)

        if current is None or not current.is_due(self.now()):
            self._stats.skipped += 1
            return AttemptOutcome.SKIPPED

        self._stats.attempts += 1
        result = await self._attempt(current)

        try:
            if result.success:
                return await self._mark_sent(current)
            return await self._mark_failed(current, result.reason or "delivery failed")
        except StoreError as e:
            return self._store_failed(message_id, "transition", e)

    async def _attempt(self, record: MessageRecord) -> DeliveryResult:
        try:
            handler = self.registry.resolve(record.message_type)
        except HandlerNotFoundError as e:
            return DeliveryResult.failed(str(e))

        self._log.info(
            f"Delivering {record.message_id} via {record.message_type}",
            extra=record_fields(record),
        )
        return await invoke_handler(
            handler, record.destination, record.content, timeout=self.handler_timeout
        )

    async def _mark_sent(self, record: MessageRecord) -> AttemptOutcome:
        if not await self.store.update_status(record.message_id, MessageStatus.SENT, None):
            return self._lost_race(record)
        self._stats.delivered += 1
        self._log.info(
            f"Message sent successfully: {record.message_id}",
            extra={**record_fields(record), "status": MessageStatus.SENT.value},
        )
        return AttemptOutcome.SENT

    async def _mark_failed(self, record: MessageRecord, reason: str) -> AttemptOutcome:
        self._stats.handler_failures[record.message_type] += 1
        retry_count = record.retry_count + 1

        if retry_count >= record.max_retry:
            updated = await self.store.update_status(
                record.message_id, MessageStatus.DEAD, reason, retry_count=retry_count
            )
            if not updated:
                return self._lost_race(record)
            self._stats.dead += 1
            self._log.error(
                f"Message failed permanently after {retry_count} attempts: {reason}",
                extra={
                    **record_fields(record),
                    "status": MessageStatus.DEAD.value,
                    "retry_count": retry_count,
                    "error": reason,
                },
            )
            return AttemptOutcome.DEAD

        delay = self.retry_policy.next_delay(retry_count)
        next_retry_time = max(self.now() + delay, record.next_retry_time)
        updated = await self.store.update_retry(
            record.message_id, retry_count, next_retry_time, reason
        )
        if not updated:
            return self._lost_race(record)
        self._stats.retries_scheduled += 1
        self._log.warning(
            f"Message failed, retry {retry_count}/{record.max_retry} at "
            f"{next_retry_time.isoformat()}: {reason}",
            extra={
                **record_fields(record),
                "retry_count": retry_count,
                "next_retry_time": next_retry_time.isoformat(),
                "error": reason,
            },
        )
        return AttemptOutcome.RETRY

    def _lost_race(self, record: MessageRecord) -> AttemptOutcome:
        self._stats.skipped += 1
        self._log.warning(
            f"Message {record.message_id} left PENDING before its transition was written",
            extra=record_fields(record),
        )
        return AttemptOutcome.SKIPPED

    def _store_failed(self, message_id: str, stage: str, error: Exception) -> AttemptOutcome:
        self._stats.store_errors += 1
        self._log.error(
            f"Store failure during {stage} of {message_id}, leaving it for the next cycle: {error}",
            extra={"message_id": message_id, "error": str(error), "stage": stage},
        )
        return AttemptOutcome.ERROR

    # ------------------------------------------------------------------
    # Scavenger
    # ------------------------------------------------------------------

    async def run_once(self) -> list[AttemptOutcome]:
        """Run one scavenger cycle over the records that are currently due."""
        self._stats.cycles += 1
        try:
            due = await self.store.find_due_for_retry(self.now(), self.batch_limit)
        except StoreError as e:
            self._stats.store_errors += 1
            self._log.error(f"Failed to load due messages: {e}", extra={"error": str(e)})
            return []

        if not due:
            return []

        self._log.debug(f"Scavenger found {len(due)} due messages", extra={"batch": len(due)})

        if self.concurrency == 1:
            outcomes = []
            for record in due:
                if self._stopping:
                    break
                outcomes.append(await self.process(record))
            return outcomes

        semaphore = asyncio.Semaphore(self.concurrency)

        async def worker(record: MessageRecord) -> AttemptOutcome:
            async with semaphore:
                if self._stopping:
                    return AttemptOutcome.SKIPPED
                return await self.process(record)

        return list(await asyncio.gather(*(worker(record) for record in due)))

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception:
                # Keep the scavenger alive; the next cycle retries whatever is due
                self._log.exception("Scavenger cycle failed")

            if not self._running:
                break
            with suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval)

    async def start(self) -> None:
        """Start the periodic scavenger. The first cycle runs immediately."""
        if self._running:
            return
        self._running = True
        self._stopping = False
        self._wakeup.clear()
        self._task = asyncio.create_task(self._loop(), name="outpost-scavenger")
        self._log.info(
            f"Delivery engine started (interval={self.interval}s, batch_limit={self.batch_limit})"
        )

    async def stop(self) -> None:
        """Stop the scavenger, waiting up to stop_grace seconds for the current cycle."""
        if not self._running:
            return
        self._running = False
        self._stopping = True
        self._wakeup.set()

        task, self._task = self._task, None
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.stop_grace)
            except TimeoutError:
                self._log.warning(
                    f"Scavenger cycle did not finish within {self.stop_grace}s, cancelling it"
                )
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        # The scavenger is gone; manual run_once() calls process whole batches again
        self._stopping = False
        self._log.info("Delivery engine stopped")
