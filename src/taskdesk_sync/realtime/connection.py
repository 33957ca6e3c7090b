# src/taskdesk_sync/realtime/connection.py

"""
Connection manager.

Owns the single live transport to the server:

  disconnected -> connecting -> connected -> disconnected (on close)
               -> connecting (after backoff) -> ...

  connecting/connected -> error on failure; error is transient and is always
  followed by the close handling, which is the only place reconnects are scheduled.

Reconnect delay is min(base * 2^attempt, cap). After max_reconnect_attempts
scheduled reconnects the manager stays disconnected until an explicit trigger
(connect(), manual_sync(), on_visible()).
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Callable, Coroutine
from typing import Any

from ..cache.query_cache import channel_messages_key
from ..core.ports import DataCache, JsonDict, Transport, TransportFactory
from ..errors import TransportClosedError, TransportUnavailableError
from .availability import AvailabilityMonitor
from .dispatcher import InboundDispatcher
from .messages import auth_frame, prepare_outbound
from .models import ConnectionState, ReplayResult, Session
from .outbound_queue import OutboundQueue
from .signals import Signal, SignalBus

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState, ConnectionState], None]


def reconnect_delay_ms(attempt: int, base_ms: float = 1000.0, cap_ms: float = 30000.0) -> float:
    """Delay before reconnect number `attempt` (0-based)."""
    attempt = max(0, min(int(attempt), 64))
    return float(min(base_ms * (2**attempt), cap_ms))


class ConnectionManager:
    def __init__(
        self,
        url: str,
        transport_factory: TransportFactory,
        queue: OutboundQueue,
        availability: AvailabilityMonitor,
        dispatcher: InboundDispatcher,
        *,
        session: Session | None = None,
        reconnect_base_ms: float = 1000.0,
        reconnect_cap_ms: float = 30000.0,
        max_reconnect_attempts: int = 10,
        client_id: str | None = None,
        cache: DataCache | None = None,
        signals: SignalBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._url = url
        self._factory = transport_factory
        self._queue = queue
        self._availability = availability
        self._dispatcher = dispatcher
        self._session = session
        self._base_ms = float(reconnect_base_ms)
        self._cap_ms = float(reconnect_cap_ms)
        self._max_attempts = max(0, int(max_reconnect_attempts))
        self._client_id = client_id
        self._cache = cache
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._transport: Transport | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._opening: asyncio.Future[None] | None = None
        self._reconnect_attempts = 0
        self._generation = 0
        self._listeners: list[StateListener] = []
        self._background: set[asyncio.Task[Any]] = set()

        self.replay_task: asyncio.Task[ReplayResult] | None = None
        self.last_connection_attempt: float | None = None

        self._dispatcher.reply = self._reply
        self._availability.add_listener(self._on_availability_changed)
        if signals is not None:
            signals.subscribe(Signal.MANUAL_SYNC, self.manual_sync)
            signals.subscribe(Signal.VISIBLE, self.on_visible)

    # ---- observable state ----

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old == new:
            return
        self._state = new
        logger.debug("Connection state %s -> %s", old.value, new.value)
        for listener in list(self._listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("State listener failed")

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any] | None:
        try:
            task = asyncio.ensure_future(coro)
        except RuntimeError:
            # No running loop (called from synchronous code); nothing to schedule on.
            coro.close()
            logger.debug("No running event loop; background step skipped")
            return None
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ---- lifecycle ----

    async def set_session(self, session: Session | None) -> None:
        """Tear down the connection for the old session and connect for the new one."""
        if session == self._session:
            return
        await self.disconnect()
        self._session = session
        if session is not None:
            await self.connect()

    async def connect(self) -> None:
        """Open the transport unless already open/opening. No-op without a session."""
        if self._session is None:
            logger.debug("No session, not connecting")
            return
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        if self._state == ConnectionState.OFFLINE and self._transport is not None:
            await self._resume()
            return
        # Explicit call: a fresh backoff budget, as for visibility and manual sync.
        self._reconnect_attempts = 0
        self._cancel_reconnect()
        await self._open()

    async def disconnect(self) -> None:
        self._generation += 1
        self._cancel_reconnect()
        self._reconnect_attempts = 0

        current = asyncio.current_task()
        pending = self._reconnect_task
        self._reconnect_task = None
        if pending is not None and not pending.done() and pending is not current:
            pending.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pending

        transport, self._transport = self._transport, None
        reader, self._reader_task = self._reader_task, None
        if reader is not None and not reader.done() and reader is not current:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        if transport is not None:
            try:
                await transport.close()
            except Exception:
                logger.debug("Transport close failed", exc_info=True)

        self._set_state(ConnectionState.DISCONNECTED)

    async def shutdown(self) -> None:
        """Drop the session and stop every background task."""
        self._session = None
        await self.disconnect()
        tasks = [t for t in self._background if not t.done()]
        for t in tasks:
            t.cancel()
        for t in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await t

    def mark_offline(self) -> None:
        if self._state != ConnectionState.OFFLINE:
            logger.warning("Network and data store both unreachable, going offline")
            self._set_state(ConnectionState.OFFLINE)

    async def on_visible(self) -> None:
        """The UI became visible again: reconnect right away if not connected."""
        if self._session is None:
            return
        logger.info("Became visible, state=%s", self._state.value)
        await self._resume()

    async def manual_sync(self) -> ReplayResult:
        """Reconnect immediately if needed, then force a replay even if the store looks down."""
        logger.info("Manual sync requested")
        if self._session is not None:
            await self._resume(wait_for_open=True)
        return await self.replay(force=True)

    async def _resume(self, *, wait_for_open: bool = False) -> None:
        """
        Explicit reconnect trigger. Never opens a second transport:
        - connecting: the open in flight is reused (optionally awaited)
        - offline with the socket still up: back to connected on the same transport
        - otherwise: reopen now with the backoff counter reset
        """
        if self._state == ConnectionState.CONNECTED:
            return
        if self._state == ConnectionState.CONNECTING:
            opening = self._opening
            if wait_for_open and opening is not None:
                await asyncio.shield(opening)
            return
        if self._transport is not None:
            if self._state == ConnectionState.OFFLINE:
                logger.info("Reusing open connection after offline period")
                self._set_state(ConnectionState.CONNECTED)
                self._maybe_replay()
            # error: the reader is closing this transport and will schedule the reconnect
            return
        self._reconnect_attempts = 0
        self._cancel_reconnect()
        await self._open()

    # ---- transport handling ----

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    async def _open(self) -> None:
        opening = asyncio.get_running_loop().create_future()
        self._opening = opening
        try:
            await self._open_once()
        finally:
            if not opening.done():
                opening.set_result(None)
            if self._opening is opening:
                self._opening = None

    async def _open_once(self) -> None:
        session = self._session
        if session is None:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        self.last_connection_attempt = self._clock()

        try:
            transport = await self._factory.open(self._url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Connection to %s failed: %r", self._url, e)
            if generation != self._generation:
                return
            self._set_state(ConnectionState.ERROR)
            self._handle_close()
            return

        if generation != self._generation:
            # disconnect() ran while the transport was opening.
            with contextlib.suppress(Exception):
                await transport.close()
            return

        logger.info("Connection established")
        self._transport = transport
        self._reconnect_attempts = 0
        self._set_state(ConnectionState.CONNECTED)

        try:
            await transport.send(json.dumps(auth_frame(session)))
        except Exception as e:
            # The reader will see the close and drive the reconnect.
            logger.warning("Authentication frame not sent: %r", e)

        self._reader_task = asyncio.create_task(self._read_loop(transport, generation))
        self._maybe_replay()

    async def _read_loop(self, transport: Transport, generation: int) -> None:
        try:
            while True:
                raw = await transport.recv()
                await self._dispatcher.dispatch_raw(raw)
        except asyncio.CancelledError:
            raise
        except TransportClosedError as e:
            logger.info("Connection closed: code=%s reason=%s", e.code, e.reason)
        except Exception as e:
            logger.error("Connection error: %r", e)
            self._set_state(ConnectionState.ERROR)
            with contextlib.suppress(Exception):
                await transport.close()

        if generation == self._generation and self._transport is transport:
            self._reader_task = None
            self._handle_close()

    def _handle_close(self) -> None:
        self._transport = None
        self._set_state(ConnectionState.DISCONNECTED)
        if self._session is None:
            return

        if self._reconnect_attempts >= self._max_attempts:
            logger.error("Maximum reconnection attempts reached (%d)", self._max_attempts)
            return

        delay_ms = reconnect_delay_ms(self._reconnect_attempts, self._base_ms, self._cap_ms)
        self._reconnect_attempts += 1
        logger.info(
            "Reconnecting in %.1fs (attempt %d/%d)",
            delay_ms / 1000.0,
            self._reconnect_attempts,
            self._max_attempts,
        )
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay_ms / 1000.0, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        self._reconnect_task = asyncio.ensure_future(self._open())

    async def _reply(self, frame: JsonDict) -> None:
        transport = self._transport
        if transport is None:
            return
        await transport.send(json.dumps(frame))

    # ---- sending ----

    async def _deliver(self, payload: Any) -> None:
        transport = self._transport
        if transport is None or self._state != ConnectionState.CONNECTED:
            raise TransportUnavailableError("socket not open")
        await transport.send(json.dumps(payload))

    async def send(self, message: JsonDict) -> bool:
        """
        Deliver now if connected and the store is up, otherwise queue.

        Never raises. Returns True if the message went out live, False if it was
        queued (or rejected as invalid).
        """
        try:
            frame = prepare_outbound(message, now=self._clock(), client_id=self._client_id)
        except (TypeError, ValueError) as e:
            logger.error("Refusing to send invalid message: %s", e)
            return False

        kind = frame["type"]
        transport = self._transport
        if (
            self._state == ConnectionState.CONNECTED
            and transport is not None
            and self._availability.is_available()
        ):
            try:
                await transport.send(json.dumps(frame))
                return True
            except Exception as e:
                logger.warning("Live send of %s failed, queueing: %r", kind, e)
        else:
            logger.info("Not connected or data store down, storing %s for later sync", kind)

        self._enqueue(frame)
        return False

    def _enqueue(self, frame: JsonDict) -> None:
        try:
            self._queue.enqueue(frame["type"], frame)
        except (TypeError, ValueError) as e:
            logger.error("Message %s cannot be queued: %s", frame.get("type"), e)
            return

        if self._cache is not None and frame["type"] == "channel_message" and frame.get("channelId"):
            self._add_optimistic_placeholder(self._cache, frame)

    def _add_optimistic_placeholder(self, cache: DataCache, frame: JsonDict) -> None:
        session = self._session
        now = self._clock()
        placeholder = {
            "id": f"temp_{int(now * 1000)}",
            "channelId": frame["channelId"],
            "content": frame.get("content"),
            "userId": frame.get("userId") or (session.user_id if session else 0),
            "username": session.username if session else "Unknown",
            "createdAt": frame.get("timestamp"),
            "isOptimistic": True,
            "isPending": True,
        }
        cache.set_query_data(
            channel_messages_key(frame["channelId"]),
            lambda old: [*(old if isinstance(old, list) else []), placeholder],
        )

    # ---- replay ----

    async def replay(self, *, force: bool = False) -> ReplayResult:
        return await self._queue.replay(self._deliver, force=force)

    def _maybe_replay(self) -> None:
        if not len(self._queue) or not self._availability.is_available():
            return
        task = self._spawn(self.replay())
        if task is not None:
            self.replay_task = task

    def _on_availability_changed(self, available: bool) -> None:
        if not available:
            return
        if self._state == ConnectionState.OFFLINE:
            if self._transport is not None:
                self._set_state(ConnectionState.CONNECTED)
                self._maybe_replay()
            else:
                self._set_state(ConnectionState.DISCONNECTED)
                self._spawn(self.connect())
        elif self._state == ConnectionState.CONNECTED:
            logger.info("Data store back online, replaying queue")
            self._maybe_replay()
