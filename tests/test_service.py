"""End-to-end tests for ReliableMessageService."""

import asyncio
from datetime import timedelta

import pytest

from outpost.core.config import DeliveryConfig
from outpost.core.message import MessageStatus
from outpost.core.service import DINGTALK, FEISHU, WECHAT, ReliableMessageService
from outpost.stores.base import DuplicateMessageIdError, StoreUnavailableError
from outpost.stores.sqlite import SqliteMessageStore


class RecordingHandler:
    """Handler that records deliveries and succeeds or fails as configured."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.delivered: list[tuple[str, str]] = []

    def attempt_delivery(self, destination: str, content: str) -> bool:
        self.delivered.append((destination, content))
        return self.succeed


@pytest.fixture
def config() -> DeliveryConfig:
    return DeliveryConfig(scavenge_interval=3600, stop_grace=1.0)


@pytest.fixture
def service(memory_store, config, clock) -> ReliableMessageService:
    return ReliableMessageService(memory_store, config=config, clock=clock)


# =============================================================================
# Delivery scenarios
# =============================================================================


async def test_successful_send_is_sent_immediately(service):
    handler = RecordingHandler()
    service.register_handler("x", handler)

    message_id = await service.send_message("x", "dest", "hello")

    record = await service.get_message(message_id)
    assert record.status is MessageStatus.SENT
    assert handler.delivered == [("dest", "hello")]
    assert service.get_stats().cycles == 0


async def test_failing_send_retries_until_dead(service, clock):
    handler = RecordingHandler(succeed=False)
    service.register_handler("x", handler)
    t0 = clock()

    message_id = await service.send_message("x", "dest", "hello", max_retry=3)

    record = await service.get_message(message_id)
    assert record.status is MessageStatus.PENDING
    assert record.retry_count == 1
    assert record.next_retry_time == t0 + timedelta(seconds=30)

    for _ in range(3):
        clock.advance(3600)
        await service.engine.run_once()

    record = await service.get_message(message_id)
    assert record.status is MessageStatus.DEAD
    assert record.retry_count == 3
    assert len(handler.delivered) == 3
    assert [r.message_id for r in await service.dead_messages()] == [message_id]


async def test_unregistered_type_consumes_retries(service, clock):
    message_id = await service.send_message("carrier-pigeon", "loft", "hello", max_retry=2)

    record = await service.get_message(message_id)
    assert record.status is MessageStatus.PENDING
    assert record.error_message == "no handler for type carrier-pigeon"

    clock.advance(3600)
    await service.engine.run_once()

    record = await service.get_message(message_id)
    assert record.status is MessageStatus.DEAD
    assert record.retry_count == 2


@pytest.mark.timeout(10)
async def test_stop_mid_attempt_leaves_consistent_record(tmp_path, clock):
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow(destination: str, content: str) -> bool:
        started.set()
        await release.wait()
        return True

    store = SqliteMessageStore(tmp_path / "messages.db")
    service = ReliableMessageService(
        store, config=DeliveryConfig(scavenge_interval=3600, stop_grace=0.2), clock=clock
    )
    service.register_handler("x", slow)
    await service.start()
    try:
        send = asyncio.create_task(service.send_message("x", "dest", "hello"))
        await asyncio.wait_for(started.wait(), timeout=2)

        loop = asyncio.get_running_loop()
        began = loop.time()
        await service.stop()
        assert loop.time() - began < 2

        send.cancel()
        with pytest.raises(asyncio.CancelledError):
            await send

        record = (await store.find_by_status(MessageStatus.PENDING))[0]
        assert record.retry_count == 0
        assert record.next_retry_time == clock()
        assert record.error_message is None
    finally:
        await service.close()


@pytest.mark.timeout(10)
async def test_pending_records_survive_restart(tmp_path, config, clock):
    path = tmp_path / "messages.db"

    first = ReliableMessageService(SqliteMessageStore(path), config=config, clock=clock)
    first.register_handler("x", RecordingHandler(succeed=False))
    async with first:
        message_id = await first.send_message("x", "dest", "hello", max_retry=5)

    # New process: new store object, clock already past the retry time
    clock.advance(60)
    delivered = RecordingHandler()
    second = ReliableMessageService(SqliteMessageStore(path), config=config, clock=clock)
    second.register_handler("x", delivered)
    async with second:
        for _ in range(200):
            if delivered.delivered:
                break
            await asyncio.sleep(0.01)
        record = await second.get_message(message_id)

    assert delivered.delivered == [("dest", "hello")]
    assert record.status is MessageStatus.SENT
    assert record.retry_count == 1


# =============================================================================
# Submission options
# =============================================================================


async def test_caller_supplied_id_must_be_unique(service):
    handler = RecordingHandler()
    service.register_handler("x", handler)

    assert await service.send_message("x", "dest", "one", message_id="MSG_custom") == "MSG_custom"
    with pytest.raises(DuplicateMessageIdError):
        await service.send_message("x", "dest", "two", message_id="MSG_custom")

    assert handler.delivered == [("dest", "one")]


async def test_max_retry_resolution_order(memory_store, clock):
    config = DeliveryConfig(default_max_retry=4, max_retry_by_type={WECHAT: 6})
    service = ReliableMessageService(memory_store, config=config, clock=clock)
    service.set_max_retry(FEISHU, 2)

    assert service.max_retry_for(DINGTALK) == 4
    assert service.max_retry_for(WECHAT) == 6
    assert service.max_retry_for(FEISHU) == 2

    explicit = await service.send_message(FEISHU, "hook", "hi", max_retry=9)
    assert (await service.get_message(explicit)).max_retry == 9
    implicit = await service.send_message(FEISHU, "hook", "hi")
    assert (await service.get_message(implicit)).max_retry == 2


def test_set_max_retry_rejects_non_positive(service):
    with pytest.raises(ValueError):
        service.set_max_retry(FEISHU, 0)


@pytest.mark.parametrize(
    "method, message_type",
    [
        ("send_dingtalk_message", DINGTALK),
        ("send_feishu_message", FEISHU),
        ("send_wechat_message", WECHAT),
    ],
)
async def test_platform_shortcuts(service, method, message_type):
    handler = RecordingHandler()
    service.register_handler(message_type, handler)

    message_id = await getattr(service, method)("target-1", "build green")

    record = await service.get_message(message_id)
    assert record.message_type == message_type
    assert handler.delivered == [("target-1", "build green")]


async def test_task_and_error_notifications(service):
    handler = RecordingHandler()
    service.register_handler(FEISHU, handler)

    await service.send_task_completion(FEISHU, "hook", "nightly-etl", 1534)
    await service.send_error(FEISHU, "hook", "nightly-etl", "disk full")

    assert handler.delivered == [
        ("hook", "Task completed: nightly-etl succeeded in 1534 ms"),
        ("hook", "Task failed: nightly-etl failed with error: disk full"),
    ]


async def test_unregister_handler(service):
    service.register_handler("x", RecordingHandler())
    assert service.unregister_handler("x")

    message_id = await service.send_message("x", "dest", "hello")

    assert (await service.get_message(message_id)).status is MessageStatus.PENDING


# =============================================================================
# Operator helpers and lifecycle
# =============================================================================


async def test_purge_message(service):
    service.register_handler("x", RecordingHandler(succeed=False))
    message_id = await service.send_message("x", "dest", "hello")

    async with service.engine.claim(message_id):
        assert not await service.purge_message(message_id)

    assert await service.purge_message(message_id)
    assert await service.get_message(message_id) is None
    assert not await service.purge_message(message_id)


async def test_context_manager_opens_and_closes(tmp_path, config):
    store = SqliteMessageStore(tmp_path / "messages.db")
    service = ReliableMessageService(store, config=config)

    async with service as running:
        assert running is service
        assert service.is_running
        assert store.is_open
        await service.start()

    assert not service.is_running
    assert not store.is_open


async def test_start_fails_when_store_unavailable(tmp_path, config):
    service = ReliableMessageService(SqliteMessageStore(tmp_path), config=config)

    with pytest.raises(StoreUnavailableError):
        await service.start()

    assert not service.is_running


def test_repr_lists_handlers(service):
    service.register_handler(WECHAT, RecordingHandler())
    service.register_handler(DINGTALK, RecordingHandler())
    assert repr(service) == (
        "ReliableMessageService(store=InMemoryMessageStore, "
        "handlers=['dingtalk', 'wechat'], running=False)"
    )
