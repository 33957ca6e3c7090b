# tests/test_messages.py

from __future__ import annotations

import pytest

from taskdesk_sync.errors import MalformedFrameError
from taskdesk_sync.realtime.messages import (
    ChannelMessageUpdated,
    DirectMessageReceived,
    Ping,
    ServerError,
    Unknown,
    auth_frame,
    channel_message,
    direct_message,
    parse_inbound,
    prepare_outbound,
    utc_iso,
)
from taskdesk_sync.realtime.models import QueuedMessage, Session


def test_parse_known_kinds() -> None:
    msg = parse_inbound('{"type": "direct_message_sent", "message": {"id": 1}}')
    assert msg == DirectMessageReceived(kind="direct_message_sent", message={"id": 1})

    upd = parse_inbound('{"type": "message_updated", "message": {"id": 2, "channelId": 4}}')
    assert isinstance(upd, ChannelMessageUpdated)
    assert upd.channel_id == 4

    assert parse_inbound(b'{"type": "ping"}') == Ping()

    err = parse_inbound('{"type": "error", "errorType": "database_error", "message": "down"}')
    assert isinstance(err, ServerError)
    assert err.store_unavailable is True
    assert err.rate_limited is False


def test_parse_unknown_and_untyped() -> None:
    assert parse_inbound('{"type": "whatever"}') == Unknown(kind="whatever", raw={"type": "whatever"})
    assert parse_inbound('{"type": 3}').kind is None


@pytest.mark.parametrize(
    "raw",
    ["", "   ", "{", "null", '"text"', "[]", b"\xff\xfe", '{"type": "channel_updated"}'],
)
def test_parse_rejects_malformed(raw) -> None:
    with pytest.raises(MalformedFrameError):
        parse_inbound(raw)


def test_prepare_outbound_annotates_chat_messages() -> None:
    original = channel_message(5, "hello")
    out = prepare_outbound(original, now=0.0, client_id="client_x")

    assert out["isOptimistic"] is True
    assert out["timestamp"] == "1970-01-01T00:00:00Z"
    assert out["clientId"] == "client_x"
    assert "isOptimistic" not in original

    typing = prepare_outbound({"type": "typing_start", "channelId": 5}, now=0.0)
    assert "isOptimistic" not in typing
    assert "clientId" not in typing


def test_prepare_outbound_rejects_invalid() -> None:
    with pytest.raises(TypeError):
        prepare_outbound(["not", "a", "dict"], now=0.0)  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        prepare_outbound({"content": "no type"}, now=0.0)


def test_frame_builders() -> None:
    assert auth_frame(Session("7", "bob")) == {"type": "auth", "userId": "7", "username": "bob"}
    assert direct_message(3, "hey") == {"type": "direct_message", "receiverId": 3, "content": "hey"}
    assert utc_iso(1.5).endswith("Z")


def test_queued_message_json_shape() -> None:
    msg = QueuedMessage(kind="channel_message", payload={"a": 1}, enqueued_at=10.0, attempts=2)
    data = msg.to_json()
    assert set(data) == {"id", "kind", "payload", "enqueuedAt", "attempts", "lastAttemptAt"}

    back = QueuedMessage.from_json(data)
    assert back == msg
    assert QueuedMessage.from_json({"payload": {}}) is None
    assert QueuedMessage.from_json({"kind": "x", "attempts": "many"}) is None
