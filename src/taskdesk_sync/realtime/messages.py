# src/taskdesk_sync/realtime/messages.py

"""
Wire frames.

Inbound frames are decoded into a closed set of dataclasses (plus `Unknown`)
so the dispatcher can handle them with a single match statement.
Outbound helpers build the JSON objects the server expects.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..core.ports import JsonDict
from ..errors import MalformedFrameError
from .models import Session

DATABASE_ERROR = "database_error"
DATABASE_RATE_LIMIT = "database_rate_limit"

OPTIMISTIC_KINDS = frozenset({"channel_message", "direct_message"})


# ---- inbound ----


@dataclass(frozen=True, slots=True)
class AuthSuccess:
    raw: JsonDict


@dataclass(frozen=True, slots=True)
class Welcome:
    raw: JsonDict


@dataclass(frozen=True, slots=True)
class DirectMessageReceived:
    """new_direct_message / direct_message_sent"""

    kind: str
    message: JsonDict


@dataclass(frozen=True, slots=True)
class DirectMessageUpdated:
    message: JsonDict


@dataclass(frozen=True, slots=True)
class ChannelMessageReceived:
    message: JsonDict


@dataclass(frozen=True, slots=True)
class ChannelMessageUpdated:
    """message_updated / channel_message_updated"""

    channel_id: Any
    message: JsonDict


@dataclass(frozen=True, slots=True)
class ChannelUpdated:
    channel: JsonDict


@dataclass(frozen=True, slots=True)
class ChannelMembershipChanged:
    """channel_member_added / channel_member_removed"""

    kind: str
    channel_id: Any


@dataclass(frozen=True, slots=True)
class ServerError:
    error_type: str | None
    message: str

    @property
    def store_unavailable(self) -> bool:
        return self.error_type == DATABASE_ERROR

    @property
    def rate_limited(self) -> bool:
        return self.error_type == DATABASE_RATE_LIMIT


@dataclass(frozen=True, slots=True)
class TypingIndicator:
    raw: JsonDict


@dataclass(frozen=True, slots=True)
class Ping:
    pass


@dataclass(frozen=True, slots=True)
class Unknown:
    kind: str | None
    raw: JsonDict = field(default_factory=dict)


InboundMessage = (
    AuthSuccess
    | Welcome
    | DirectMessageReceived
    | DirectMessageUpdated
    | ChannelMessageReceived
    | ChannelMessageUpdated
    | ChannelUpdated
    | ChannelMembershipChanged
    | ServerError
    | TypingIndicator
    | Ping
    | Unknown
)


def _require_dict(data: JsonDict, name: str, kind: str) -> JsonDict:
    value = data.get(name)
    if not isinstance(value, dict):
        raise MalformedFrameError(f"{kind} frame without an object {name!r}")
    return value


def decode_frame(raw: str | bytes) -> JsonDict:
    """Parse one text frame into a JSON object."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedFrameError("frame is not valid UTF-8") from e
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedFrameError("empty frame")
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise MalformedFrameError(f"frame is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedFrameError("frame is not a JSON object")
    return data


def parse_inbound(raw: str | bytes) -> InboundMessage:
    """
    Decode a raw frame into an InboundMessage.

    Raises MalformedFrameError for frames that are not JSON objects or that lack
    the payload their kind requires. Unrecognized kinds become Unknown.
    """
    data = decode_frame(raw)
    kind = data.get("type")
    if not isinstance(kind, str):
        return Unknown(kind=None, raw=data)

    match kind:
        case "auth_success":
            return AuthSuccess(raw=data)
        case "welcome":
            return Welcome(raw=data)
        case "new_direct_message" | "direct_message_sent":
            return DirectMessageReceived(kind=kind, message=_require_dict(data, "message", kind))
        case "direct_message_updated":
            return DirectMessageUpdated(message=_require_dict(data, "message", kind))
        case "new_channel_message":
            return ChannelMessageReceived(message=_require_dict(data, "message", kind))
        case "message_updated" | "channel_message_updated":
            message = _require_dict(data, "message", kind)
            return ChannelMessageUpdated(
                channel_id=data.get("channelId") or message.get("channelId"),
                message=message,
            )
        case "channel_updated":
            return ChannelUpdated(channel=_require_dict(data, "channel", kind))
        case "channel_member_added" | "channel_member_removed":
            return ChannelMembershipChanged(kind=kind, channel_id=data.get("channelId"))
        case "error":
            error_type = data.get("errorType")
            return ServerError(
                error_type=error_type if isinstance(error_type, str) else None,
                message=str(data.get("message") or ""),
            )
        case "typing_indicator":
            return TypingIndicator(raw=data)
        case "ping":
            return Ping()
        case _:
            return Unknown(kind=kind, raw=data)


# ---- outbound ----


def utc_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=UTC).isoformat().replace("+00:00", "Z")


def auth_frame(session: Session) -> JsonDict:
    return {"type": "auth", "userId": session.user_id, "username": session.username}


def pong_frame() -> JsonDict:
    return {"type": "pong"}


def prepare_outbound(message: JsonDict, *, now: float, client_id: str | None = None) -> JsonDict:
    """
    Copy an outbound message and annotate it before the first send attempt.

    Chat messages get the optimistic flag and a client-side timestamp so the UI
    can reconcile them against the server copy later.
    """
    if not isinstance(message, dict):
        raise TypeError("outbound message must be a dict")
    kind = message.get("type")
    if not isinstance(kind, str) or not kind:
        raise ValueError("outbound message requires a 'type'")

    out = dict(message)
    if kind in OPTIMISTIC_KINDS:
        out["isOptimistic"] = True
        out["timestamp"] = utc_iso(now)
    if client_id and "clientId" not in out:
        out["clientId"] = client_id
    return out


def channel_message(channel_id: Any, content: str, **extra: Any) -> JsonDict:
    return {"type": "channel_message", "channelId": channel_id, "content": content, **extra}


def direct_message(receiver_id: Any, content: str, **extra: Any) -> JsonDict:
    return {"type": "direct_message", "receiverId": receiver_id, "content": content, **extra}
