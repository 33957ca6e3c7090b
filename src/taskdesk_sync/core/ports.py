# src/taskdesk_sync/core/ports.py

"""
Ports (interfaces) used by the realtime layer.

The connection manager, queue and dispatcher depend on Protocols instead of
concrete implementations. This keeps the transport/storage/cache swappable and
makes testing easier (see tests/fakes.py).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

JsonDict = dict[str, Any]
# Decoded wire frame: {"type": "...", ...}.

QueryKey = tuple[str, ...]
# Cache key, e.g. ("/api/channels/5/messages",).

ErrorReporter = Callable[[str], None]
# The generic user-facing error path (toast, console line, ...).


class Transport(Protocol):
    """One open bidirectional channel. Text frames only."""

    async def send(self, text: str) -> None: ...

    async def recv(self) -> str:
        """Return the next frame; raise TransportClosedError when the peer closes."""
        ...

    async def close(self) -> None: ...


class TransportFactory(Protocol):
    async def open(self, url: str) -> Transport: ...


class KeyValueStore(Protocol):
    """Durable JSON key/value storage with per-key versions."""

    def get(self, key: str, default: Any = None) -> Any: ...
    def get_versioned(self, key: str) -> tuple[Any, int]: ...
    def set(self, key: str, value: Any) -> int: ...
    def compare_and_set(self, key: str, value: Any, *, expected_version: int) -> bool: ...
    def delete(self, key: str) -> None: ...


class DataCache(Protocol):
    """The UI's local data cache (query-keyed)."""

    def get_query_data(self, key: QueryKey) -> Any: ...
    def set_query_data(self, key: QueryKey, updater: Callable[[Any], Any]) -> Any: ...
    def invalidate_queries(self, key: QueryKey) -> None: ...


class NetworkProbe(Protocol):
    """Host-reported network state (the browser's navigator.onLine)."""

    async def is_online(self) -> bool: ...


class HealthChecker(Protocol):
    async def check(self) -> bool:
        """True when the server reports its data store reachable."""
        ...
