# src/taskdesk_sync/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires storage, cache, availability, queue, dispatcher and the connection
  manager into AppState.

Nothing here opens a connection; the background runner does that.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import deque

from ..cache.query_cache import QueryCache
from ..config import get_settings
from ..core.ports import HealthChecker, TransportFactory
from ..core.state import AppState
from ..realtime.availability import AvailabilityMonitor, HttpHealthChecker
from ..realtime.connection import ConnectionManager
from ..realtime.dispatcher import InboundDispatcher
from ..realtime.indicator import StatusIndicator
from ..realtime.models import QueuedMessage, Session
from ..realtime.outbound_queue import OutboundQueue
from ..realtime.signals import SignalBus
from ..realtime.transport import WebSocketTransportFactory
from ..storage.kv_store import CLIENT_ID_KEY, SqliteKeyValueStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.state_db_path.parent.mkdir(parents=True, exist_ok=True)


def load_or_create_client_id(store: SqliteKeyValueStore) -> str:
    existing = store.get(CLIENT_ID_KEY)
    if isinstance(existing, str) and existing:
        return existing
    client_id = f"client_{uuid.uuid4().hex[:8]}_{int(time.time() * 1000)}"
    store.set(CLIENT_ID_KEY, client_id)
    logger.info("Generated client id %s", client_id)
    return client_id


def session_from_settings(settings) -> Session | None:
    user_id = getattr(settings, "user_id", None)
    if not user_id:
        return None
    return Session(user_id=str(user_id), username=str(getattr(settings, "username", "") or ""))


def create_initial_state(
    *,
    settings=None,
    transport_factory: TransportFactory | None = None,
    health_checker: HealthChecker | None = None,
) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings and the network collaborators injectable makes the app
    easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    notices: deque[str] = deque()

    def report_error(text: str) -> None:
        notices.append(f"[ERROR] {text}")

    def on_dropped(msg: QueuedMessage) -> None:
        notices.append(f"[SYNC] A {msg.kind} message could not be sent after {msg.attempts} attempts.")

    if health_checker is None and getattr(settings, "health_check_enabled", False):
        health_checker = HttpHealthChecker(
            settings.health_url, timeout_seconds=settings.health_timeout_seconds
        )

    store = SqliteKeyValueStore(settings.state_db_path)
    client_id = load_or_create_client_id(store)
    cache = QueryCache()
    availability = AvailabilityMonitor(
        store,
        window_seconds=settings.unavailable_window_seconds,
        health_checker=health_checker,
    )
    queue = OutboundQueue(
        store,
        availability,
        max_attempts=settings.max_delivery_attempts,
        replay_interval_seconds=settings.replay_interval_seconds,
        on_dropped=on_dropped,
    )
    session = session_from_settings(settings)
    dispatcher = InboundDispatcher(
        cache,
        availability,
        current_user_id=lambda: session.user_id if session else None,
        report_error=report_error,
    )
    signals = SignalBus()
    manager = ConnectionManager(
        settings.server_url,
        transport_factory or WebSocketTransportFactory(),
        queue,
        availability,
        dispatcher,
        session=session,
        reconnect_base_ms=settings.reconnect_base_ms,
        reconnect_cap_ms=settings.reconnect_cap_ms,
        max_reconnect_attempts=settings.max_reconnect_attempts,
        client_id=client_id,
        cache=cache,
        signals=signals,
    )
    indicator = StatusIndicator(manager, availability, store, notify=notices.append)

    return AppState(
        settings=settings,
        store=store,
        cache=cache,
        availability=availability,
        queue=queue,
        dispatcher=dispatcher,
        manager=manager,
        signals=signals,
        indicator=indicator,
        client_id=client_id,
        notices=notices,
    )
