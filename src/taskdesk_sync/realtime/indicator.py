# src/taskdesk_sync/realtime/indicator.py

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from ..core.ports import KeyValueStore
from ..storage.kv_store import OFFLINE_SINCE_KEY
from .availability import AvailabilityMonitor, from_iso, to_iso
from .connection import ConnectionManager
from .models import ConnectionState

logger = logging.getLogger(__name__)


def format_elapsed(seconds: float) -> str:
    minutes = int(max(0.0, seconds) // 60)
    if minutes < 1:
        return "just now"
    if minutes == 1:
        return "1 minute ago"
    if minutes < 60:
        return f"{minutes} minutes ago"
    hours = minutes // 60
    if hours == 1:
        return "1 hour ago"
    return f"{hours} hours ago"


def format_last_attempt(seconds: float | None) -> str:
    if seconds is None:
        return "never"
    secs = int(max(0.0, seconds))
    if secs < 5:
        return "just now"
    if secs < 60:
        return f"{secs} seconds ago"
    minutes = secs // 60
    if minutes == 1:
        return "1 minute ago"
    return f"{minutes} minutes ago"


@dataclass(frozen=True, slots=True)
class Banner:
    title: str
    pending_count: int
    offline_since: str | None
    last_attempt: str

    def render(self) -> str:
        parts = [self.title]
        if self.offline_since:
            parts.append(f"since {self.offline_since}")
        parts.append(f"last attempt {self.last_attempt}")
        if self.pending_count:
            parts.append(f"{self.pending_count} pending")
        return " | ".join(parts) + " | /sync to force sync"


class StatusIndicator:
    """
    Connection banner model: offline / store-unavailable / disconnected, with the
    time the outage started and a manual sync action. No per-message errors.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        availability: AvailabilityMonitor,
        store: KeyValueStore,
        *,
        notify: Callable[[str], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._manager = manager
        self._availability = availability
        self._store = store
        self._notify = notify
        self._clock = clock
        availability.add_listener(self._on_availability_changed)
        if not availability.is_available():
            self._mark_outage_start()

    def offline_since(self) -> float | None:
        return from_iso(self._store.get(OFFLINE_SINCE_KEY))

    def _mark_outage_start(self) -> None:
        if self.offline_since() is None:
            self._store.set(OFFLINE_SINCE_KEY, to_iso(self._clock()))

    def _on_availability_changed(self, available: bool) -> None:
        if not available:
            self._mark_outage_start()
            return

        started = self.offline_since()
        if started is None:
            return
        minutes = int(max(0.0, self._clock() - started) // 60)
        self._store.delete(OFFLINE_SINCE_KEY)
        text = f"Database connection restored. Connection was down for {minutes} minute(s). Syncing pending messages..."
        logger.info("%s", text)
        if self._notify is not None:
            self._notify(text)

    def banner(self, now: float | None = None) -> Banner | None:
        """None when everything is healthy (or there is no session)."""
        if self._manager.session is None:
            return None
        if now is None:
            now = self._clock()

        state = self._manager.state
        available = self._availability.is_available(now)
        pending = self._manager.pending_count

        if state == ConnectionState.CONNECTED and available and not pending:
            return None

        if state == ConnectionState.OFFLINE:
            title = "You are offline"
        elif not available:
            title = "Database connection issues"
        elif state == ConnectionState.DISCONNECTED:
            title = "WebSocket disconnected"
        elif state == ConnectionState.CONNECTING:
            title = "Connecting..."
        elif state == ConnectionState.ERROR:
            title = "Connection error"
        else:
            title = "Messages waiting to sync"

        started = self.offline_since()
        attempt = self._manager.last_connection_attempt
        return Banner(
            title=title,
            pending_count=pending,
            offline_since=format_elapsed(now - started) if started is not None else None,
            last_attempt=format_last_attempt(None if attempt is None else now - attempt),
        )
