# src/taskdesk_sync/realtime/models.py

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ConnectionState(StrEnum):
    """
    Connection lifecycle status.

    Notes:
    - "error" is transient: the transport is expected to report a close right after.
    - "offline" is set by the availability loop when the store is down and the
      host network is corroborated as down too.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    OFFLINE = "offline"


@dataclass(frozen=True, slots=True)
class Session:
    """Authenticated session context. The transport is only opened when one is present."""

    user_id: str
    username: str = ""


@dataclass(slots=True)
class QueuedMessage:
    kind: str
    payload: Any
    enqueued_at: float
    attempts: int = 0
    last_attempt_at: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": self.payload,
            "enqueuedAt": self.enqueued_at,
            "attempts": self.attempts,
            "lastAttemptAt": self.last_attempt_at,
        }

    @classmethod
    def from_json(cls, data: Any) -> QueuedMessage | None:
        """Best-effort decode of one persisted entry; None if it is unusable."""
        if not isinstance(data, dict):
            return None
        kind = data.get("kind")
        if not isinstance(kind, str) or not kind:
            return None
        try:
            enqueued_at = float(data.get("enqueuedAt") or 0.0)
            attempts = int(data.get("attempts") or 0)
            last = data.get("lastAttemptAt")
            last_attempt_at = float(last) if last is not None else None
        except (TypeError, ValueError):
            return None
        msg_id = data.get("id")
        return cls(
            kind=kind,
            payload=data.get("payload"),
            enqueued_at=enqueued_at,
            attempts=attempts,
            last_attempt_at=last_attempt_at,
            id=str(msg_id) if msg_id else uuid.uuid4().hex,
        )


@dataclass(slots=True)
class ReplayResult:
    """Outcome of one replay pass. `skipped` means nothing was attempted (store down and not forced, or a replay already running)."""

    delivered: list[QueuedMessage] = field(default_factory=list)
    retained: list[QueuedMessage] = field(default_factory=list)
    dropped: list[QueuedMessage] = field(default_factory=list)
    skipped: bool = False
