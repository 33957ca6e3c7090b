# src/taskdesk_sync/connectors/realtime_runner.py

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from ..core.state import AppState
from ..realtime.availability import HostNetworkProbe, run_availability_loop

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _run_realtime(state: AppState, stop_event: asyncio.Event) -> None:
    """
    Realtime connector (async):

    connect -> availability loop -> wait for stop

    Shutdown model:
    - main thread sets stop_event via loop.call_soon_threadsafe(stop_event.set)
    - the manager is shut down on this loop so timers and tasks die with it.
    """
    settings = state.settings
    manager = state.manager

    if manager.session is None:
        logger.warning("TASKDESK_USER_ID is not set; realtime connection stays closed until a session exists.")

    probe = HostNetworkProbe(settings.server_url)
    availability_task = asyncio.create_task(
        run_availability_loop(
            state.availability,
            manager,
            network_probe=probe,
            interval_seconds=settings.availability_check_interval_seconds,
        )
    )

    try:
        await manager.connect()
        await stop_event.wait()
    except asyncio.CancelledError:
        logger.info("Realtime connector cancelled.")
    except Exception:
        logger.exception("Realtime connector crashed.")
    finally:
        availability_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await availability_task

        with contextlib.suppress(Exception):
            await manager.shutdown()

        logger.info("Realtime connector stopped.")


@dataclass
class RealtimeRunner:
    thread: threading.Thread
    loop: asyncio.AbstractEventLoop
    stop_event: asyncio.Event

    def stop(self) -> None:
        try:
            self.loop.call_soon_threadsafe(self.stop_event.set)
        except RuntimeError:
            logger.debug("Failed to signal realtime stop.", exc_info=True)

    def join(self, timeout: float | None = None) -> None:
        self.thread.join(timeout=timeout)

    def call(self, coro: Coroutine[Any, Any, T], timeout: float | None = 30.0) -> T:
        """Run a coroutine on the realtime loop from another thread and wait for its result."""
        fut = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return fut.result(timeout=timeout)


def start_realtime_in_background(state: AppState) -> RealtimeRunner | None:
    """
    Start the realtime connector in a background thread.

    The console REPL blocks on input(), while the connection manager needs a
    running event loop for its reader task and reconnect timers.
    """
    ready = threading.Event()
    holder: dict[str, object] = {}

    def runner() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        stop_event = asyncio.Event()

        holder["loop"] = loop
        holder["stop_event"] = stop_event
        ready.set()

        try:
            loop.run_until_complete(_run_realtime(state, stop_event))
        finally:
            with contextlib.suppress(Exception):
                loop.stop()
            with contextlib.suppress(Exception):
                loop.close()

    t = threading.Thread(target=runner, name="taskdesk-realtime", daemon=True)
    t.start()

    ready.wait(timeout=5.0)
    loop = holder.get("loop")
    stop_event = holder.get("stop_event")

    if not isinstance(loop, asyncio.AbstractEventLoop) or not isinstance(stop_event, asyncio.Event):
        logger.error("Realtime thread did not initialize properly.")
        return None

    logger.info("Realtime background thread started.")
    runner_handle = RealtimeRunner(thread=t, loop=loop, stop_event=stop_event)
    state.runner = runner_handle
    return runner_handle
