"""WebSocket transport for the session manager."""
from __future__ import annotations

import logging
from urllib.parse import urlencode

import websockets

from relay_chat.application.exceptions import TransportError

logger = logging.getLogger(__name__)


class WebsocketConnection:
    def __init__(self, ws: websockets.ClientConnection) -> None:
        self._ws = ws

    async def send(self, raw: str) -> None:
        try:
            await self._ws.send(raw)
        except websockets.ConnectionClosed as exc:
            raise TransportError(f"Connection closed: {exc}") from exc

    async def recv(self) -> str:
        try:
            frame = await self._ws.recv()
        except websockets.ConnectionClosed as exc:
            raise TransportError(f"Connection closed: {exc}") from exc
        return frame if isinstance(frame, str) else frame.decode()

    async def close(self) -> None:
        await self._ws.close()


class WebsocketTransport:
    """Opens ``<url>?token=<jwt>`` connections with the websockets library."""

    def __init__(self, url: str, *, open_timeout: float = 10.0) -> None:
        self._url = url
        self._open_timeout = open_timeout

    async def open(self, token: str) -> WebsocketConnection:
        uri = f"{self._url}?{urlencode({'token': token})}"
        try:
            ws = await websockets.connect(uri, open_timeout=self._open_timeout)
        except (OSError, TimeoutError, websockets.InvalidHandshake) as exc:
            logger.debug("WS open failed: %s", exc)
            raise TransportError(f"Could not connect to {self._url}: {exc}") from exc
        return WebsocketConnection(ws)
