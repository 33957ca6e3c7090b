# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from taskdesk_sync.cache.query_cache import QueryCache
from taskdesk_sync.realtime.availability import AvailabilityMonitor
from taskdesk_sync.realtime.connection import ConnectionManager
from taskdesk_sync.realtime.dispatcher import InboundDispatcher
from taskdesk_sync.realtime.models import Session
from taskdesk_sync.realtime.outbound_queue import OutboundQueue
from taskdesk_sync.realtime.signals import SignalBus
from taskdesk_sync.storage.kv_store import SqliteKeyValueStore

from .fakes import FakeClock, FakeTransportFactory


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with bootstrap and AppState.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="taskdesk-test",
        log_level="INFO",
        server_url="ws://localhost:5000/ws",
        health_url="http://localhost:5000/api/health",
        health_check_enabled=False,
        health_timeout_seconds=1.0,
        user_id="1",
        username="alice",
        # Paths (tmp per test run)
        data_dir=tmp_path,
        state_db_path=tmp_path / "state.sqlite3",
        # Limits
        reconnect_base_ms=1000.0,
        reconnect_cap_ms=30000.0,
        max_reconnect_attempts=10,
        max_delivery_attempts=5,
        replay_interval_seconds=0.0,
        unavailable_window_seconds=300.0,
        availability_check_interval_seconds=30.0,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path) -> SqliteKeyValueStore:
    return SqliteKeyValueStore(tmp_path / "state.sqlite3")


@pytest.fixture()
def availability(store: SqliteKeyValueStore, clock: FakeClock) -> AvailabilityMonitor:
    return AvailabilityMonitor(store, window_seconds=300, clock=clock)


@pytest.fixture()
def cache() -> QueryCache:
    return QueryCache()


@pytest.fixture()
def queue(store: SqliteKeyValueStore, availability: AvailabilityMonitor, clock: FakeClock) -> OutboundQueue:
    return OutboundQueue(store, availability, max_attempts=5, clock=clock)


@pytest.fixture()
def dispatcher(cache: QueryCache, availability: AvailabilityMonitor) -> InboundDispatcher:
    return InboundDispatcher(cache, availability, current_user_id=lambda: "1")


@pytest.fixture()
def factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture()
def signals() -> SignalBus:
    return SignalBus()


@pytest.fixture()
def manager(
    factory: FakeTransportFactory,
    queue: OutboundQueue,
    availability: AvailabilityMonitor,
    dispatcher: InboundDispatcher,
    cache: QueryCache,
    signals: SignalBus,
    clock: FakeClock,
) -> ConnectionManager:
    """
    ConnectionManager wired with a fake transport and a real SQLite-backed queue.

    Tests that open a connection should `await manager.shutdown()` at the end.
    """
    return ConnectionManager(
        "ws://test/ws",
        factory,
        queue,
        availability,
        dispatcher,
        session=Session(user_id="1", username="alice"),
        client_id="client_test",
        cache=cache,
        signals=signals,
        clock=clock,
    )
