"""In-process WebSocket connection manager."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import WebSocket

from relay_chat.infrastructure.ws.protocol import WsOutbound

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks admitted WebSocket connections by socket id."""

    def __init__(self) -> None:
        self._connections: dict[str, WebSocket] = {}

    def register(self, ws: WebSocket, socket_id: str) -> None:
        self._connections[socket_id] = ws
        logger.debug("WS registered: %s (total=%d)", socket_id, len(self._connections))

    def disconnect(self, socket_id: str) -> None:
        if self._connections.pop(socket_id, None) is not None:
            logger.debug("WS unregistered: %s", socket_id)

    def __len__(self) -> int:
        return len(self._connections)

    async def broadcast(self, event_type: str, data: Any) -> None:
        """Send a WS message to every admitted connection."""
        raw = WsOutbound(type=event_type, data=data).model_dump_json()
        dead: list[str] = []
        for socket_id, ws in list(self._connections.items()):
            try:
                await ws.send_text(raw)
            except Exception:
                dead.append(socket_id)
        for socket_id in dead:
            self.disconnect(socket_id)

    async def send_to(self, socket_id: str, event_type: str, data: Any) -> None:
        """Send a WS message to a single connection."""
        ws = self._connections.get(socket_id)
        if ws is None:
            return
        raw = WsOutbound(type=event_type, data=data).model_dump_json()
        try:
            await ws.send_text(raw)
        except Exception:
            self.disconnect(socket_id)
