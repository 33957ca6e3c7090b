# src/taskdesk_sync/core/state.py

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..cache.query_cache import QueryCache
from ..realtime.availability import AvailabilityMonitor
from ..realtime.connection import ConnectionManager
from ..realtime.dispatcher import InboundDispatcher
from ..realtime.indicator import StatusIndicator
from ..realtime.outbound_queue import OutboundQueue
from ..realtime.signals import SignalBus
from ..storage.kv_store import SqliteKeyValueStore

if TYPE_CHECKING:
    from ..connectors.realtime_runner import RealtimeRunner


@dataclass
class AppState:
    # Store Settings on the state for easy access in other modules later.
    settings: object

    store: SqliteKeyValueStore
    cache: QueryCache
    availability: AvailabilityMonitor
    queue: OutboundQueue
    dispatcher: InboundDispatcher
    manager: ConnectionManager
    signals: SignalBus
    indicator: StatusIndicator
    client_id: str

    # Set once the background event loop is running.
    runner: RealtimeRunner | None = None

    # User-facing lines produced off the console thread (errors, drops, recoveries).
    notices: deque[str] = field(default_factory=deque)

    def notify(self, text: str) -> None:
        self.notices.append(text)

    def drain_notices(self) -> list[str]:
        out: list[str] = []
        while self.notices:
            out.append(self.notices.popleft())
        return out
