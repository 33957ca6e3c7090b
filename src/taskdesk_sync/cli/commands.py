# src/taskdesk_sync/cli/commands.py

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Callable, Coroutine
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, cast

from ..core.state import AppState
from ..realtime.indicator import format_elapsed
from ..realtime.messages import channel_message, direct_message
from ..realtime.models import ReplayResult
from ..realtime.signals import Signal

CommandEmitter = Callable[[str], None]
CommandHandler2 = Callable[[AppState, list[str]], str]
CommandHandler3 = Callable[[AppState, list[str], CommandEmitter | None], str]
CommandHandler = CommandHandler2 | CommandHandler3

logger = logging.getLogger(__name__)

NOT_RUNNING = "Realtime connection is not running."


class CommandRegistry:
    """Simple slash-command registry used by the console (/help, /status, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    def handle(
        self,
        state: AppState,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            nparams = len(inspect.signature(handler).parameters)
        except (TypeError, ValueError):
            nparams = 3

        if nparams >= 3:
            h3 = cast(CommandHandler3, handler)
            return h3(state, args, emit)

        h2 = cast(CommandHandler2, handler)
        return h2(state, args)

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        lines.append("  /exit - Quit.")
        return "\n".join(lines)


registry = CommandRegistry()


def _run(state: AppState, coro: Coroutine[Any, Any, Any], timeout: float = 30.0) -> Any:
    runner = state.runner
    if runner is None:
        coro.close()
        raise RuntimeError(NOT_RUNNING)
    return runner.call(coro, timeout=timeout)


def _parse_id(raw: str) -> int | str:
    return int(raw) if raw.isdigit() else raw


def _describe_replay(result: ReplayResult) -> str:
    if result.skipped:
        return "Sync skipped (another sync is already running)."
    parts = [f"delivered {len(result.delivered)}"]
    if result.retained:
        parts.append(f"{len(result.retained)} will retry")
    if result.dropped:
        parts.append(f"{len(result.dropped)} could not be sent")
    return "Sync finished: " + ", ".join(parts) + "."


async def _emit_and_wait(state: AppState, signal: Signal) -> None:
    tasks = state.signals.emit(signal)
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


def cmd_help(state: AppState, args: list[str]) -> str:
    return registry.build_help()


def cmd_status(state: AppState, args: list[str]) -> str:
    manager = state.manager
    availability = state.availability
    session = manager.session
    user = f"{session.username or '?'} ({session.user_id})" if session else "none"

    last_failure = availability.last_failure_at()
    failure_text = format_elapsed(time.time() - last_failure) if last_failure is not None else "never"

    lines = [
        "Status:",
        f"  Server: {state.settings.server_url}",
        f"  Session: {user}",
        f"  Connection: {manager.state.value}",
        f"  Data store available: {'yes' if availability.is_available() else 'no'} (last failure: {failure_text})",
        f"  Reconnect attempts: {manager.reconnect_attempts}",
        f"  Pending messages: {manager.pending_count}",
    ]
    banner = state.indicator.banner()
    if banner is not None:
        lines.append(f"  Banner: {banner.render()}")
    return "\n".join(lines)


def cmd_connect(state: AppState, args: list[str]) -> str:
    if state.manager.session is None:
        return "No session configured. Set TASKDESK_USER_ID to connect."
    try:
        _run(state, state.manager.connect())
    except RuntimeError as e:
        return str(e)
    return f"Connection: {state.manager.state.value}"


def cmd_disconnect(state: AppState, args: list[str]) -> str:
    try:
        _run(state, state.manager.disconnect())
    except RuntimeError as e:
        return str(e)
    return "Disconnected. Automatic reconnects are off until /connect."


def cmd_sync(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /sync -> reconnect if needed, then replay queued messages even if the
    data store was recently reported as unavailable.
    """
    if emit:
        with contextlib.suppress(Exception):
            emit(f"[SYNC] Sending {state.manager.pending_count} pending message(s)...")

    # Do NOT duplicate the user-facing message in INFO logs (it prints into console).
    logger.debug("Manual sync requested from console")

    try:
        result = _run(state, state.manager.manual_sync(), timeout=120.0)
    except RuntimeError as e:
        return str(e)
    except FutureTimeoutError:
        return "Sync is still running in the background."
    return _describe_replay(result)


def cmd_visible(state: AppState, args: list[str]) -> str:
    try:
        _run(state, _emit_and_wait(state, Signal.VISIBLE))
    except RuntimeError as e:
        return str(e)
    return f"Connection: {state.manager.state.value}"


def _send(state: AppState, message: dict[str, Any]) -> str:
    try:
        live = _run(state, state.manager.send(message))
    except RuntimeError as e:
        return str(e)
    if live:
        return "Sent."
    return f"Queued for sync ({state.manager.pending_count} pending)."


def cmd_send(state: AppState, args: list[str]) -> str:
    """/send <channelId> <text...>"""
    if len(args) < 2:
        return "Usage: /send <channelId> <text>"
    message = channel_message(_parse_id(args[0]), " ".join(args[1:]))
    session = state.manager.session
    if session is not None:
        message["userId"] = _parse_id(session.user_id)
    return _send(state, message)


def cmd_dm(state: AppState, args: list[str]) -> str:
    """/dm <userId> <text...>"""
    if len(args) < 2:
        return "Usage: /dm <userId> <text>"
    return _send(state, direct_message(_parse_id(args[0]), " ".join(args[1:])))


def cmd_queue(state: AppState, args: list[str]) -> str:
    items = state.queue.items()
    if not items:
        return "Outbound queue is empty."
    now = time.time()
    lines = [f"Outbound queue ({len(items)}):"]
    for i, msg in enumerate(items, start=1):
        lines.append(
            f"{i}. {msg.kind} queued {format_elapsed(now - msg.enqueued_at)}, attempts={msg.attempts}"
        )
    return "\n".join(lines)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show connection, data store and queue status.")
registry.register("connect", cmd_connect, help_text="Open the realtime connection.")
registry.register("disconnect", cmd_disconnect, help_text="Close the realtime connection.")
registry.register(
    "sync", cmd_sync, help_text="Reconnect and send pending messages now.", aliases=["retry"]
)
registry.register("visible", cmd_visible, help_text="Simulate the app becoming visible again.")
registry.register("send", cmd_send, help_text="Send a channel message: /send <channelId> <text>.")
registry.register("dm", cmd_dm, help_text="Send a direct message: /dm <userId> <text>.")
registry.register("queue", cmd_queue, help_text="List messages waiting to sync.")
