# src/taskdesk_sync/realtime/signals.py

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class Signal(StrEnum):
    MANUAL_SYNC = "manual-sync-attempt"
    VISIBLE = "visibility-visible"


class SignalBus:
    """
    Out-of-band UI signals (manual sync button, tab becoming visible).

    Handlers may be plain callables or coroutine functions. emit() never blocks:
    coroutine handlers are scheduled as tasks on the running loop, and the tasks
    are returned so callers (tests) can await them.
    """

    def __init__(self) -> None:
        self._handlers: dict[Signal, list[Callable[[], Any]]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def subscribe(self, signal: Signal, handler: Callable[[], Any]) -> None:
        self._handlers.setdefault(signal, []).append(handler)

    def emit(self, signal: Signal) -> list[asyncio.Task[Any]]:
        logger.info("Signal %s", signal.value)
        tasks: list[asyncio.Task[Any]] = []
        for handler in list(self._handlers.get(signal, [])):
            try:
                result = handler()
            except Exception:
                logger.exception("Signal handler failed signal=%s", signal.value)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                tasks.append(task)
        return tasks
