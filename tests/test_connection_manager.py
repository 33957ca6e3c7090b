# tests/test_connection_manager.py

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from taskdesk_sync.cache.query_cache import QueryCache, channel_messages_key
from taskdesk_sync.realtime.availability import AvailabilityMonitor
from taskdesk_sync.realtime.connection import ConnectionManager, reconnect_delay_ms
from taskdesk_sync.realtime.dispatcher import InboundDispatcher
from taskdesk_sync.realtime.messages import channel_message, direct_message
from taskdesk_sync.realtime.models import ConnectionState, Session
from taskdesk_sync.realtime.outbound_queue import OutboundQueue
from taskdesk_sync.realtime.signals import Signal, SignalBus
from taskdesk_sync.storage.kv_store import QUEUE_KEY, SqliteKeyValueStore

from .fakes import FakeClock, FakeTransportFactory


async def _until(cond: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not cond():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _fast_manager(
    factory: FakeTransportFactory,
    queue: OutboundQueue,
    availability: AvailabilityMonitor,
    dispatcher: InboundDispatcher,
    clock: FakeClock,
) -> ConnectionManager:
    return ConnectionManager(
        "ws://test/ws",
        factory,
        queue,
        availability,
        dispatcher,
        session=Session(user_id="1", username="alice"),
        reconnect_base_ms=1,
        reconnect_cap_ms=1,
        clock=clock,
    )


def test_reconnect_delay_doubles_and_caps() -> None:
    assert [reconnect_delay_ms(n) for n in range(6)] == [1000, 2000, 4000, 8000, 16000, 30000]
    assert reconnect_delay_ms(9) == 30000
    assert reconnect_delay_ms(500) == 30000
    assert reconnect_delay_ms(2, base_ms=100, cap_ms=250) == 250


@pytest.mark.asyncio
async def test_connect_sends_one_auth_frame_and_is_idempotent(
    manager: ConnectionManager, factory: FakeTransportFactory
) -> None:
    await asyncio.gather(manager.connect(), manager.connect())
    await manager.connect()

    assert factory.open_calls == 1
    assert manager.state == ConnectionState.CONNECTED
    assert factory.last.sent_json() == [{"type": "auth", "userId": "1", "username": "alice"}]
    assert manager.last_connection_attempt is not None

    await manager.shutdown()


@pytest.mark.asyncio
async def test_no_session_means_no_connection(
    factory: FakeTransportFactory,
    queue: OutboundQueue,
    availability: AvailabilityMonitor,
    dispatcher: InboundDispatcher,
) -> None:
    manager = ConnectionManager("ws://test/ws", factory, queue, availability, dispatcher)

    await manager.connect()

    assert factory.open_calls == 0
    assert manager.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_failed_open_schedules_backoff_and_disconnect_cancels_it(
    manager: ConnectionManager, factory: FakeTransportFactory
) -> None:
    factory.fail = True
    seen: list[ConnectionState] = []
    manager.add_state_listener(lambda old, new: seen.append(new))

    await manager.connect()

    assert seen == [ConnectionState.CONNECTING, ConnectionState.ERROR, ConnectionState.DISCONNECTED]
    assert manager.state == ConnectionState.DISCONNECTED
    assert manager.reconnect_attempts == 1
    assert manager.reconnect_pending is True

    await manager.disconnect()

    assert manager.reconnect_pending is False
    assert manager.reconnect_attempts == 0
    assert manager.state == ConnectionState.DISCONNECTED
    assert factory.open_calls == 1


@pytest.mark.asyncio
async def test_reconnects_stop_after_ten_attempts(
    factory: FakeTransportFactory,
    queue: OutboundQueue,
    availability: AvailabilityMonitor,
    dispatcher: InboundDispatcher,
    clock: FakeClock,
) -> None:
    factory.fail = True
    manager = _fast_manager(factory, queue, availability, dispatcher, clock)

    await manager.connect()
    await _until(lambda: factory.open_calls >= 11 and not manager.reconnect_pending)
    await asyncio.sleep(0.05)

    # one initial open plus ten scheduled reconnects
    assert factory.open_calls == 11
    assert manager.reconnect_attempts == 10
    assert manager.reconnect_pending is False
    assert manager.state == ConnectionState.DISCONNECTED

    # an explicit trigger starts over
    factory.fail = False
    await manager.on_visible()
    assert manager.state == ConnectionState.CONNECTED
    assert manager.reconnect_attempts == 0

    await manager.shutdown()


@pytest.mark.asyncio
async def test_explicit_connect_after_exhaustion_gets_fresh_backoff(
    factory: FakeTransportFactory,
    queue: OutboundQueue,
    availability: AvailabilityMonitor,
    dispatcher: InboundDispatcher,
    clock: FakeClock,
) -> None:
    factory.fail = True
    manager = _fast_manager(factory, queue, availability, dispatcher, clock)

    await manager.connect()
    await _until(lambda: factory.open_calls >= 11 and not manager.reconnect_pending)
    await asyncio.sleep(0.05)
    assert manager.reconnect_attempts == 10

    await manager.connect()

    assert factory.open_calls == 12
    assert manager.reconnect_attempts == 1
    assert manager.reconnect_pending is True

    await manager.shutdown()
    assert manager.reconnect_pending is False


@pytest.mark.asyncio
async def test_server_close_reconnects_and_resets_attempts(
    factory: FakeTransportFactory,
    queue: OutboundQueue,
    availability: AvailabilityMonitor,
    dispatcher: InboundDispatcher,
    clock: FakeClock,
) -> None:
    manager = _fast_manager(factory, queue, availability, dispatcher, clock)
    await manager.connect()
    first = factory.last

    first.server_close(1006, "gone")
    await _until(lambda: factory.open_calls == 2 and manager.state == ConnectionState.CONNECTED)

    assert manager.reconnect_attempts == 0
    assert factory.last is not first
    assert factory.last.sent_json()[0]["type"] == "auth"

    await manager.shutdown()


@pytest.mark.asyncio
async def test_offline_messages_are_delivered_in_order_after_connect(
    manager: ConnectionManager,
    factory: FakeTransportFactory,
    store: SqliteKeyValueStore,
    cache: QueryCache,
) -> None:
    assert await manager.send(channel_message(5, "A", userId="1")) is False
    assert await manager.send(direct_message(2, "B")) is False

    assert manager.pending_count == 2
    assert [e["payload"]["content"] for e in store.get(QUEUE_KEY)] == ["A", "B"]
    placeholders = cache.get_query_data(channel_messages_key(5))
    assert len(placeholders) == 1
    assert placeholders[0]["isOptimistic"] is True
    assert str(placeholders[0]["id"]).startswith("temp_")

    await manager.connect()
    assert manager.replay_task is not None
    await manager.replay_task

    sent = factory.last.sent_json()
    assert [f["type"] for f in sent] == ["auth", "channel_message", "direct_message"]
    assert [f.get("content") for f in sent[1:]] == ["A", "B"]
    assert sent[1]["clientId"] == "client_test"
    assert sent[1]["isOptimistic"] is True
    assert store.get(QUEUE_KEY) == []
    assert manager.pending_count == 0

    await manager.shutdown()


@pytest.mark.asyncio
async def test_live_send_when_connected(
    manager: ConnectionManager, factory: FakeTransportFactory
) -> None:
    await manager.connect()

    assert await manager.send(channel_message(5, "live")) is True
    assert factory.last.sent_json()[-1]["content"] == "live"
    assert manager.pending_count == 0

    factory.last.fail_send = True
    assert await manager.send(channel_message(5, "lost socket")) is False
    assert manager.pending_count == 1

    await manager.shutdown()


@pytest.mark.asyncio
async def test_send_rejects_invalid_message(manager: ConnectionManager) -> None:
    assert await manager.send({"content": "no type"}) is False
    assert manager.pending_count == 0


@pytest.mark.asyncio
async def test_store_unavailable_queues_then_recovery_replays(
    manager: ConnectionManager,
    factory: FakeTransportFactory,
    availability: AvailabilityMonitor,
    clock: FakeClock,
) -> None:
    await manager.connect()
    availability.record_failure()

    assert await manager.send(channel_message(5, "A")) is False
    assert manager.pending_count == 1

    clock.advance(301)
    availability.refresh()
    assert manager.replay_task is not None
    await manager.replay_task

    assert factory.last.sent_json()[-1]["content"] == "A"
    assert manager.pending_count == 0

    await manager.shutdown()


@pytest.mark.asyncio
async def test_manual_sync_signal_forces_replay(
    manager: ConnectionManager,
    factory: FakeTransportFactory,
    availability: AvailabilityMonitor,
    signals: SignalBus,
) -> None:
    availability.record_failure()
    await manager.send(channel_message(5, "A"))

    tasks = signals.emit(Signal.MANUAL_SYNC)
    results = await asyncio.gather(*tasks)

    assert factory.open_calls == 1
    assert manager.state == ConnectionState.CONNECTED
    assert len(results[0].delivered) == 1
    assert factory.last.sent_json()[-1]["content"] == "A"

    await manager.shutdown()


@pytest.mark.asyncio
async def test_visibility_signal_reconnects(
    manager: ConnectionManager, factory: FakeTransportFactory, signals: SignalBus
) -> None:
    await asyncio.gather(*signals.emit(Signal.VISIBLE))

    assert factory.open_calls == 1
    assert manager.state == ConnectionState.CONNECTED

    await asyncio.gather(*signals.emit(Signal.VISIBLE))
    assert factory.open_calls == 1

    await manager.shutdown()


@pytest.mark.asyncio
async def test_ping_from_server_gets_pong(
    manager: ConnectionManager, factory: FakeTransportFactory
) -> None:
    await manager.connect()
    transport = factory.last

    transport.push({"type": "ping"})
    await _until(lambda: {"type": "pong"} in transport.sent_json())

    await manager.shutdown()


@pytest.mark.asyncio
async def test_set_session_switches_user(
    manager: ConnectionManager, factory: FakeTransportFactory
) -> None:
    await manager.connect()
    first = factory.last

    await manager.set_session(Session(user_id="2", username="bob"))

    assert first.closed is True
    assert factory.open_calls == 2
    assert factory.last.sent_json()[0] == {"type": "auth", "userId": "2", "username": "bob"}

    await manager.shutdown()
    assert manager.session is None
    assert manager.state == ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_transport_error_passes_through_error_and_schedules_reconnect(
    manager: ConnectionManager, factory: FakeTransportFactory
) -> None:
    seen: list[ConnectionState] = []
    manager.add_state_listener(lambda old, new: seen.append(new))
    await manager.connect()
    transport = factory.last

    transport.fail_recv(RuntimeError("boom"))
    await _until(lambda: manager.state == ConnectionState.DISCONNECTED)

    assert seen == [
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.ERROR,
        ConnectionState.DISCONNECTED,
    ]
    assert transport.closed is True
    assert manager.reconnect_pending is True
    assert manager.reconnect_attempts == 1
    assert factory.open_calls == 1

    await manager.shutdown()
    assert manager.reconnect_pending is False


@pytest.mark.asyncio
async def test_manual_sync_during_connect_waits_for_the_same_open(
    manager: ConnectionManager, factory: FakeTransportFactory
) -> None:
    factory.delay = 0.01
    await manager.send(channel_message(5, "A"))

    await asyncio.gather(manager.connect(), manager.manual_sync())

    assert factory.open_calls == 1
    assert manager.state == ConnectionState.CONNECTED
    transport = factory.last
    await _until(lambda: manager.pending_count == 0)
    sent = transport.sent_json()
    assert [f["type"] for f in sent] == ["auth", "channel_message"]
    assert sent[1]["content"] == "A"

    await manager.shutdown()
    assert transport.closed is True


@pytest.mark.asyncio
@pytest.mark.parametrize("trigger", ["manual_sync", "on_visible", "connect"])
async def test_explicit_trigger_while_offline_reuses_open_transport(
    manager: ConnectionManager, factory: FakeTransportFactory, trigger: str
) -> None:
    await manager.connect()
    transport = factory.last
    manager.mark_offline()
    assert await manager.send(channel_message(5, "A")) is False

    await getattr(manager, trigger)()

    assert factory.open_calls == 1
    assert manager.state == ConnectionState.CONNECTED
    await _until(lambda: manager.pending_count == 0)
    assert transport.sent_json()[-1]["content"] == "A"
    assert [f["type"] for f in transport.sent_json()].count("auth") == 1

    await manager.shutdown()
    assert transport.closed is True
