# src/taskdesk_sync/errors.py

from __future__ import annotations


class TaskdeskSyncError(Exception):
    """Base class for errors raised by the sync layer."""


class MalformedFrameError(TaskdeskSyncError, ValueError):
    """Inbound frame is not a JSON object or lacks a field its kind requires."""


class TransportUnavailableError(TaskdeskSyncError):
    """No open transport at delivery time."""


class TransportClosedError(TaskdeskSyncError):
    """The peer closed the transport."""

    def __init__(self, code: int | None = None, reason: str = "") -> None:
        super().__init__(f"transport closed code={code} reason={reason!r}")
        self.code = code
        self.reason = reason
