# src/taskdesk_sync/realtime/dispatcher.py

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from ..cache.query_cache import (
    CHANNELS_KEY,
    CONVERSATIONS_KEY,
    channel_key,
    channel_members_key,
    channel_messages_key,
    direct_messages_key,
)
from ..core.ports import DataCache, ErrorReporter, JsonDict
from ..errors import MalformedFrameError
from .availability import AvailabilityMonitor
from .messages import (
    AuthSuccess,
    ChannelMembershipChanged,
    ChannelMessageReceived,
    ChannelMessageUpdated,
    ChannelUpdated,
    DirectMessageReceived,
    DirectMessageUpdated,
    InboundMessage,
    Ping,
    ServerError,
    TypingIndicator,
    Unknown,
    Welcome,
    parse_inbound,
    pong_frame,
)

logger = logging.getLogger(__name__)

Reply = Callable[[JsonDict], Awaitable[None]]


def _as_list(data: Any) -> list[Any]:
    return list(data) if isinstance(data, list) else []


def _append_if_missing(message: JsonDict) -> Callable[[Any], list[Any]]:
    def update(old: Any) -> list[Any]:
        items = _as_list(old)
        if any(isinstance(m, dict) and m.get("id") == message.get("id") for m in items):
            return items
        return [*items, message]

    return update


def _replace_by_id(updated: JsonDict) -> Callable[[Any], list[Any]]:
    def update(old: Any) -> list[Any]:
        if not isinstance(old, list):
            return [updated]
        return [updated if isinstance(m, dict) and m.get("id") == updated.get("id") else m for m in old]

    return update


def _reconcile_channel_message(message: JsonDict) -> Callable[[Any], list[Any]]:
    """Drop the optimistic placeholder for this message, then add the server copy once."""

    def update(old: Any) -> list[Any]:
        if not isinstance(old, list):
            return [message]
        kept = [
            m
            for m in old
            if not (
                isinstance(m, dict)
                and m.get("isOptimistic")
                and m.get("content") == message.get("content")
                and m.get("userId") == message.get("userId")
            )
        ]
        if any(isinstance(m, dict) and m.get("id") == message.get("id") for m in kept):
            return kept
        return [*kept, message]

    return update


class InboundDispatcher:
    """
    Decode inbound frames and apply them to the data cache.

    This is a side-effecting dispatch table, not a business-logic engine: each
    known kind maps to a fixed set of cache merges/invalidations. Bad frames and
    unknown kinds are logged and dropped; nothing here raises to the transport.
    """

    def __init__(
        self,
        cache: DataCache,
        availability: AvailabilityMonitor,
        *,
        current_user_id: Callable[[], str | None] = lambda: None,
        report_error: ErrorReporter | None = None,
        on_typing: Callable[[JsonDict], None] | None = None,
        reply: Reply | None = None,
    ) -> None:
        self._cache = cache
        self._availability = availability
        self._current_user_id = current_user_id
        self._report_error = report_error
        self._on_typing = on_typing
        self.reply = reply

    async def dispatch_raw(self, raw: str | bytes) -> InboundMessage | None:
        """Parse and handle one frame. Returns the decoded message, or None if it was malformed."""
        try:
            msg = parse_inbound(raw)
        except MalformedFrameError as e:
            logger.warning("Dropping malformed frame: %s", e)
            return None
        try:
            await self.dispatch(msg)
        except Exception:
            logger.exception("Handler failed for %s", type(msg).__name__)
        return msg

    def _other_party(self, message: JsonDict) -> Any | None:
        sender = message.get("senderId")
        receiver = message.get("receiverId")
        if sender is None or receiver is None:
            return None
        me = self._current_user_id()
        return receiver if str(sender) == str(me) else sender

    async def dispatch(self, msg: InboundMessage) -> None:
        match msg:
            case AuthSuccess():
                logger.info("Authentication successful")

            case Welcome():
                logger.info("Received welcome message")

            case DirectMessageReceived(kind=kind, message=message):
                other = self._other_party(message)
                if other is None:
                    logger.debug("%s without sender/receiver ids; ignored", kind)
                    return
                self._cache.set_query_data(direct_messages_key(other), _append_if_missing(message))
                self._cache.invalidate_queries(direct_messages_key(other))
                self._cache.invalidate_queries(CONVERSATIONS_KEY)

            case DirectMessageUpdated(message=message):
                other = self._other_party(message)
                if other is None:
                    logger.debug("direct_message_updated without sender/receiver ids; ignored")
                    return
                self._cache.set_query_data(direct_messages_key(other), _replace_by_id(message))
                self._cache.invalidate_queries(direct_messages_key(other))
                self._cache.invalidate_queries(CONVERSATIONS_KEY)

            case ChannelMessageReceived(message=message):
                channel_id = message.get("channelId")
                if channel_id is None:
                    logger.debug("new_channel_message without channelId; ignored")
                    return
                self._cache.set_query_data(
                    channel_messages_key(channel_id), _reconcile_channel_message(message)
                )
                self._cache.invalidate_queries(channel_messages_key(channel_id))
                self._cache.invalidate_queries(CHANNELS_KEY)

            case ChannelMessageUpdated(channel_id=channel_id, message=message):
                if channel_id is None:
                    logger.debug("message_updated without channelId; ignored")
                    return
                edited = {
                    **message,
                    "isEdited": True,
                    "updatedAt": message.get("updatedAt")
                    or datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                }
                self._cache.set_query_data(channel_messages_key(channel_id), _replace_by_id(edited))
                self._cache.invalidate_queries(channel_messages_key(channel_id))

            case ChannelUpdated(channel=channel):
                self._cache.set_query_data(CHANNELS_KEY, _replace_by_id(channel))
                self._cache.invalidate_queries(CHANNELS_KEY)
                if channel.get("id") is not None:
                    self._cache.invalidate_queries(channel_key(channel["id"]))

            case ChannelMembershipChanged(kind=kind, channel_id=channel_id):
                logger.info("Channel membership changed: %s channel=%s", kind, channel_id)
                if channel_id is None:
                    return
                self._cache.invalidate_queries(channel_members_key(channel_id))
                self._cache.invalidate_queries(channel_key(channel_id))
                self._cache.invalidate_queries(CHANNELS_KEY)

            case ServerError() as err if err.store_unavailable:
                # Shown by the dedicated availability banner, never as a generic error.
                logger.warning("Server reports data store unavailable: %s", err.message)
                self._availability.record_failure()

            case ServerError() as err if err.rate_limited:
                logger.warning("Database rate limit: %s", err.message)

            case ServerError(error_type=error_type, message=message):
                logger.error("Error from server (%s): %s", error_type, message)
                if self._report_error is not None:
                    self._report_error(message or "Server error")

            case TypingIndicator(raw=raw):
                logger.debug("Typing indicator: %s", raw)
                if self._on_typing is not None:
                    self._on_typing(raw)

            case Ping():
                if self.reply is not None:
                    await self.reply(pong_frame())

            case Unknown(kind=kind):
                logger.info("Unhandled message type: %s", kind)
