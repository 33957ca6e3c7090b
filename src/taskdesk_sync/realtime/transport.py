# src/taskdesk_sync/realtime/transport.py

from __future__ import annotations

import logging

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from ..errors import TransportClosedError

logger = logging.getLogger(__name__)


class WebSocketTransport:
    """Transport port over a websockets client connection."""

    def __init__(self, conn: ClientConnection) -> None:
        self._conn = conn

    async def send(self, text: str) -> None:
        try:
            await self._conn.send(text)
        except ConnectionClosed as e:
            raise _closed(e) from e

    async def recv(self) -> str:
        try:
            frame = await self._conn.recv()
        except ConnectionClosed as e:
            raise _closed(e) from e
        if isinstance(frame, bytes):
            return frame.decode("utf-8", errors="replace")
        return frame

    async def close(self) -> None:
        await self._conn.close()


def _closed(e: ConnectionClosed) -> TransportClosedError:
    rcvd = e.rcvd
    if rcvd is None:
        return TransportClosedError(None, "no close frame")
    return TransportClosedError(rcvd.code, rcvd.reason)


class WebSocketTransportFactory:
    """
    Opens one websocket per call.

    websockets' own reconnect/ping features stay off the reconnect path: the
    connection manager owns backoff. Keepalive pings are left at the library default.
    """

    def __init__(self, *, open_timeout: float = 10.0) -> None:
        self._open_timeout = open_timeout

    async def open(self, url: str) -> WebSocketTransport:
        logger.info("Connecting to %s", url)
        conn = await connect(url, open_timeout=self._open_timeout)
        return WebSocketTransport(conn)
