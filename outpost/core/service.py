"""Public façade for reliable message delivery."""

from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from outpost.core.config import DeliveryConfig
from outpost.core.engine import DeliveryEngine, EngineStats
from outpost.core.handler import DeliveryHandler, HandlerFunc, HandlerRegistry
from outpost.core.logging import get_logger
from outpost.core.message import MessageRecord, MessageStatus, generate_message_id
from outpost.core.retry import RetryPolicy
from outpost.stores.base import DEFAULT_BATCH_LIMIT

if TYPE_CHECKING:
    from outpost.stores.base import MessageStore

# Message types of the built-in platform shortcuts
DINGTALK = "dingtalk"
FEISHU = "feishu"
WECHAT = "wechat"


class ReliableMessageService:
    """Durable, at-least-once delivery of outbound notifications.

    Construct one instance per process at startup and pass it to whoever
    needs to send messages. Submitted messages are persisted before any
    delivery attempt, tried once immediately, and retried by a background
    scavenger with exponential backoff until they are SENT or DEAD.

    Example:
        store = SqliteMessageStore("reliable_message.db")
        service = ReliableMessageService(store)
        service.register_handler("feishu", post_to_feishu)
        async with service:
            await service.send_message("feishu", webhook_url, "deploy finished")
    """

    def __init__(
        self,
        store: "MessageStore",
        config: DeliveryConfig | None = None,
        registry: HandlerRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or DeliveryConfig()
        self.store = store
        self.registry = registry or HandlerRegistry()
        self.engine = DeliveryEngine(
            store,
            self.registry,
            retry_policy=retry_policy or self.config.retry_policy(),
            interval=self.config.scavenge_interval,
            batch_limit=self.config.batch_limit,
            stop_grace=self.config.stop_grace,
            concurrency=self.config.concurrency,
            handler_timeout=self.config.handler_timeout,
            clock=clock,
            log_level=self.config.log_level,
        )
        self._max_retry_by_type = dict(self.config.max_retry_by_type)
        self._log = get_logger("outpost.service", self.config.log_level)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the store and start the scavenger. No-op if already running.

        Raises:
            StoreUnavailableError: If the store cannot be opened.
        """
        if self.engine.is_running:
            return
        await self.store.open()
        await self.engine.start()

    async def stop(self) -> None:
        """Stop the scavenger, waiting a bounded time for in-flight work."""
        await self.engine.stop()

    async def close(self) -> None:
        """Stop the scavenger and close the store."""
        await self.stop()
        await self.store.close()

    @property
    def is_running(self) -> bool:
        return self.engine.is_running

    async def __aenter__(self) -> "ReliableMessageService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def register_handler(self, message_type: str, handler: DeliveryHandler | HandlerFunc) -> None:
        self.registry.register(message_type, handler)

    def unregister_handler(self, message_type: str) -> bool:
        return self.registry.unregister(message_type)

    def set_max_retry(self, message_type: str, max_retry: int) -> None:
        """Override the retry ceiling for new messages of message_type."""
        if max_retry < 1:
            raise ValueError(f"max_retry must be >= 1, got {max_retry}")
        self._max_retry_by_type[message_type] = max_retry

    def max_retry_for(self, message_type: str) -> int:
        return self._max_retry_by_type.get(message_type, self.config.default_max_retry)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def send_message(
        self,
        message_type: str,
        destination: str,
        content: str,
        *,
        max_retry: int | None = None,
        message_id: str | None = None,
    ) -> str:
        """Persist a message and make one immediate delivery attempt.

        Blocks for the duration of that attempt. Delivery failures never
        raise; the scavenger keeps retrying and the outcome can be read back
        with get_message().

        Args:
            message_type: Handler lookup key.
            destination: Opaque target passed to the handler.
            content: Opaque payload passed to the handler.
            max_retry: Retry ceiling for this message; defaults to the
                per-type override, then the configured default.
            message_id: Caller-chosen id; generated when omitted.

        Returns:
            The message id.

        Raises:
            DuplicateMessageIdError: If message_id is already in the store.
            StoreError: If the message could not be persisted.
        """
        now = self.engine.now()
        record = MessageRecord(
            message_id=message_id or generate_message_id(),
            message_type=message_type,
            destination=destination,
            content=content,
            max_retry=max_retry if max_retry is not None else self.max_retry_for(message_type),
            next_retry_time=now,
            create_time=now,
            update_time=now,
        )

        # Hold the claim across insert and first attempt so the scavenger
        # cannot pick the record up in between
        async with self.engine.claim(record.message_id) as claimed:
            stored = await self.store.insert(record)
            self._log.info(
                f"Accepted message {stored.message_id}",
                extra={"message_id": stored.message_id, "message_type": stored.message_type},
            )
            if claimed:
                await self.engine.process_claimed(stored.message_id)

        return stored.message_id

    async def send_task_completion(
        self, message_type: str, destination: str, task_name: str, duration_ms: int
    ) -> str:
        content = f"Task completed: {task_name} succeeded in {duration_ms} ms"
        return await self.send_message(message_type, destination, content)

    async def send_error(
        self, message_type: str, destination: str, task_name: str, error_text: str
    ) -> str:
        content = f"Task failed: {task_name} failed with error: {error_text}"
        return await self.send_message(message_type, destination, content)

    async def send_dingtalk_message(self, webhook: str, content: str) -> str:
        return await self.send_message(DINGTALK, webhook, content)

    async def send_feishu_message(self, webhook: str, content: str) -> str:
        return await self.send_message(FEISHU, webhook, content)

    async def send_wechat_message(self, open_id: str, content: str) -> str:
        return await self.send_message(WECHAT, open_id, content)

    # ------------------------------------------------------------------
    # Operator helpers
    # ------------------------------------------------------------------

    async def get_message(self, message_id: str) -> MessageRecord | None:
        return await self.store.find_by_message_id(message_id)

    async def dead_messages(self, limit: int = DEFAULT_BATCH_LIMIT) -> list[MessageRecord]:
        """Messages that exhausted their retries, oldest first."""
        return await self.store.find_by_status(MessageStatus.DEAD, limit)

    async def purge_message(self, message_id: str) -> bool:
        """Remove a message from the store. Refuses messages that are in flight."""
        if self.engine.is_claimed(message_id):
            self._log.warning(
                f"Refusing to purge in-flight message {message_id}",
                extra={"message_id": message_id},
            )
            return False
        return await self.store.delete(message_id)

    def get_stats(self) -> EngineStats:
        return self.engine.get_stats()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(store={type(self.store).__name__}, "
            f"handlers={self.registry.registered_types}, running={self.is_running})"
        )
