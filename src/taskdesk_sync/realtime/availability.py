# src/taskdesk_sync/realtime/availability.py

"""
Data-store availability.

The transport can be open while the database behind the server is down, so
availability is tracked separately: a failure timestamp is persisted and the
store counts as unavailable for a fixed window after it. No explicit
"recovered" signal exists; the window simply runs out.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import httpx

from ..core.ports import HealthChecker, KeyValueStore, NetworkProbe
from ..storage.kv_store import LAST_FAILURE_KEY

if TYPE_CHECKING:
    from .connection import ConnectionManager

logger = logging.getLogger(__name__)

AvailabilityListener = Callable[[bool], None]


def to_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=UTC).isoformat()


def from_iso(raw: object) -> float | None:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.timestamp()


class AvailabilityMonitor:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        window_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        health_checker: HealthChecker | None = None,
    ) -> None:
        self._store = store
        self._window = float(window_seconds)
        self._clock = clock
        self._health_checker = health_checker
        self._listeners: list[AvailabilityListener] = []
        self._last_known = self.is_available()

    def add_listener(self, listener: AvailabilityListener) -> None:
        self._listeners.append(listener)

    def last_failure_at(self) -> float | None:
        return from_iso(self._store.get(LAST_FAILURE_KEY))

    def is_available(self, now: float | None = None) -> bool:
        last = self.last_failure_at()
        if last is None:
            return True
        if now is None:
            now = self._clock()
        return now - last >= self._window

    def record_failure(self, now: float | None = None) -> None:
        if now is None:
            now = self._clock()
        self._store.set(LAST_FAILURE_KEY, to_iso(now))
        logger.warning("Data store marked unavailable at %s", to_iso(now))
        self.refresh(now)

    def clear(self) -> None:
        self._store.delete(LAST_FAILURE_KEY)
        self.refresh()

    def refresh(self, now: float | None = None) -> bool:
        """Re-derive the flag and notify listeners if it flipped."""
        available = self.is_available(now)
        if available != self._last_known:
            self._last_known = available
            logger.info("Data store availability changed: available=%s", available)
            for listener in list(self._listeners):
                try:
                    listener(available)
                except Exception:
                    logger.exception("Availability listener failed")
        return available

    async def check_health(self) -> bool | None:
        """
        Ask the server directly. Records a failure when the store is reported
        down. Returns None if no health checker is configured.
        """
        if self._health_checker is None:
            return None
        ok = await self._health_checker.check()
        if not ok:
            self.record_failure()
        return ok


class HttpHealthChecker:
    """GET <health_url> and read `databaseConnected`. Any HTTP or decode failure counts as down."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = httpx.Timeout(timeout_seconds)
        self._client = client

    async def check(self) -> bool:
        try:
            if self._client is not None:
                resp = await self._client.get(self._url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.get(self._url)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            logger.warning("Health check failed url=%s: %r", self._url, e)
            return False
        except ValueError:
            logger.warning("Health check returned non-JSON body url=%s", self._url)
            return False

        if not isinstance(data, dict):
            return False
        return bool(data.get("databaseConnected"))


class HostNetworkProbe:
    """Treat the network as up if a TCP connection to the server host can be opened."""

    def __init__(self, server_url: str, *, timeout_seconds: float = 3.0) -> None:
        parts = urlsplit(server_url)
        self._host = parts.hostname or "localhost"
        default_port = 443 if parts.scheme in ("wss", "https") else 80
        self._port = parts.port or default_port
        self._timeout = float(timeout_seconds)

    async def is_online(self) -> bool:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port), timeout=self._timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True


async def run_availability_loop(
    monitor: AvailabilityMonitor,
    manager: ConnectionManager,
    *,
    network_probe: NetworkProbe | None = None,
    interval_seconds: float = 30.0,
) -> None:
    """
    Periodic re-check.

    Every interval_seconds:
    - ask the server health endpoint (if configured)
    - re-derive the availability flag (self-heals after the window)
    - if the store is down and the host network is down too, mark the manager offline

    To stop the loop, cancel the coroutine/task.
    """
    sleep_s = max(0.05, float(interval_seconds))

    while True:
        try:
            await monitor.check_health()
        except Exception:
            logger.exception("check_health failed")

        available = monitor.refresh()
        if not available and network_probe is not None:
            try:
                online = await network_probe.is_online()
            except Exception:
                logger.exception("network probe failed")
                online = True
            if not online:
                manager.mark_offline()

        await asyncio.sleep(sleep_s)
