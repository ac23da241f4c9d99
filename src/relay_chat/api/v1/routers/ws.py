from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from relay_chat.config import settings
from relay_chat.infrastructure.ws.gateway import Gateway
from relay_chat.infrastructure.ws.protocol import WsOutbound

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])


def _token_from(websocket: WebSocket, token: str | None) -> str | None:
    if token is not None:
        return token
    header = websocket.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:]
    return None


@router.websocket("/ws")
@router.websocket("/socket")
async def ws_chat(
    websocket: WebSocket,
    token: str | None = Query(None),
) -> None:
    gateway: Gateway = websocket.app.state.gateway
    session = await gateway.admit(websocket, _token_from(websocket, token))
    if session is None:
        return

    heartbeat_task = asyncio.create_task(
        _heartbeat(websocket), name=f"ws-heartbeat-{session.socket_id}",
    )
    try:
        while True:
            raw = await websocket.receive_text()
            await gateway.handle_frame(session, raw)
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("WS error for %s", session.socket_id)
    finally:
        heartbeat_task.cancel()
        await gateway.release(session)


async def _heartbeat(ws: WebSocket) -> None:
    interval = settings.WS_HEARTBEAT_SECONDS
    try:
        while True:
            await asyncio.sleep(interval)
            await ws.send_text(WsOutbound(type="pong", data={}).model_dump_json())
    except asyncio.CancelledError:
        pass
    except Exception:
        pass
