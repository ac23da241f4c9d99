"""Server side of the synchronization protocol.

Owns the presence registry and rate limiter for this process and routes
every admitted frame through admission control into the mutation pipeline.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import WebSocket
from pydantic import ValidationError as PydanticValidationError

from relay_chat.application.dto.events import Notification
from relay_chat.application.dto.principal import Principal
from relay_chat.application.dto.session import ConnectionSession
from relay_chat.application.exceptions import AppError, AuthError, RateLimitError
from relay_chat.application.ports.auth import TokenVerifier
from relay_chat.application.ports.clock import Clock, SystemClock
from relay_chat.domain.value_objects.enums import EventKind, NotificationType
from relay_chat.domain.value_objects.ids import new_socket_id
from relay_chat.infrastructure.ws.manager import ConnectionManager
from relay_chat.infrastructure.ws.protocol import WsInbound, WsOutbound, message_to_wire, parse_command
from relay_chat.services.auth_gate import authenticate
from relay_chat.services.message_pipeline import MutationPipeline
from relay_chat.services.presence import PresenceRegistry
from relay_chat.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

AUTH_FAILED_CLOSE_CODE = 4001

_MUTATION_EVENTS = frozenset(kind.value for kind in EventKind)


class Gateway:
    def __init__(
        self,
        verifier: TokenVerifier,
        pipeline: MutationPipeline,
        limiter: RateLimiter,
        *,
        presence: PresenceRegistry | None = None,
        manager: ConnectionManager | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.verifier = verifier
        self.pipeline = pipeline
        self.limiter = limiter
        self.presence = presence or PresenceRegistry()
        self.manager = manager or ConnectionManager()
        self._clock = clock or SystemClock()
        self._cleanup_task: asyncio.Task[None] | None = None

    async def admit(self, ws: WebSocket, token: str | None) -> ConnectionSession | None:
        """Run the auth gate; on success register the socket and announce presence."""
        await ws.accept()
        try:
            principal = await authenticate(token, self.verifier)
        except AuthError as exc:
            logger.info("WS handshake rejected: %s", exc.detail)
            await ws.send_text(
                WsOutbound(type=NotificationType.CONNECT_ERROR, data={"message": exc.detail}).model_dump_json()
            )
            await ws.close(code=AUTH_FAILED_CLOSE_CODE, reason=exc.detail[:120])
            return None

        session = ConnectionSession(
            socket_id=new_socket_id(),
            identity=principal,
            connected_at=self._clock.now(),
        )
        self.presence.admit(session)
        self.manager.register(ws, session.socket_id)
        await self.manager.send_to(
            session.socket_id,
            NotificationType.CONNECTED,
            {"socketId": session.socket_id, "user": principal.as_dict()},
        )
        await self.broadcast_online_users()
        return session

    async def release(self, session: ConnectionSession) -> None:
        self.manager.disconnect(session.socket_id)
        self.limiter.remove(session.socket_id)
        if self.presence.remove(session.socket_id) is not None:
            await self.broadcast_online_users()

    async def broadcast_online_users(self) -> None:
        users = [p.as_dict() for p in self.presence.online_users()]
        await self.manager.broadcast(NotificationType.ONLINE_USERS, users)

    async def handle_frame(self, session: ConnectionSession, raw: str) -> None:
        try:
            frame = WsInbound.model_validate_json(raw)
        except PydanticValidationError:
            await self._send_error(session, "Invalid payload")
            return

        if frame.type == "ping":
            await self.manager.send_to(session.socket_id, NotificationType.PONG, {})
            return

        if frame.type not in _MUTATION_EVENTS:
            await self._send_error(session, f"Unknown event type: {frame.type}", frame.ref)
            return

        try:
            await self._handle_mutation(session, frame)
        except RateLimitError as exc:
            await self.manager.send_to(
                session.socket_id,
                NotificationType.RATE_LIMIT,
                {"eventType": exc.event_kind, "message": exc.detail, "retryAfter": exc.retry_after},
            )
            await self._ack(
                session, frame.ref, ok=False, error=exc.detail, retryAfter=exc.retry_after, code=exc.code,
            )
        except AppError as exc:
            logger.info("Rejected %s from %s: %s", frame.type, session.socket_id, exc.detail)
            await self._send_error(session, exc.detail, frame.ref, code=exc.code)
        except Exception:
            logger.exception("Error processing %s from %s", frame.type, session.socket_id)
            await self._send_error(session, f"Failed to process {frame.type}", frame.ref)

    async def _handle_mutation(self, session: ConnectionSession, frame: WsInbound) -> None:
        principal: Principal = session.identity
        self.limiter.check(session.socket_id, frame.type, principal.id)
        command = parse_command(frame.type, frame.data)
        outcome = await self.pipeline.handle(command, principal)
        await self.dispatch(session, outcome.notifications)
        await self._ack(session, frame.ref, ok=True, message=message_to_wire(outcome.message))

    async def dispatch(self, session: ConnectionSession, notifications: list[Notification]) -> None:
        for note in notifications:
            if note.audience == "origin":
                await self.manager.send_to(session.socket_id, note.type, note.data)
            else:
                await self.manager.broadcast(note.type, note.data)

    async def _send_error(
        self, session: ConnectionSession, message: str, ref: str | None = None, *, code: str = "error",
    ) -> None:
        await self.manager.send_to(session.socket_id, NotificationType.ERROR, {"message": message})
        await self._ack(session, ref, ok=False, error=message, code=code)

    async def _ack(self, session: ConnectionSession, ref: str | None, *, ok: bool, **extra: Any) -> None:
        if ref is None:
            return
        await self.manager.send_to(session.socket_id, NotificationType.ACK, {"ref": ref, "ok": ok, **extra})

    def start_cleanup(self, interval_seconds: float) -> None:
        self._cleanup_task = asyncio.create_task(
            self._cleanup_loop(interval_seconds), name="rate-limiter-cleanup",
        )

    async def stop_cleanup(self) -> None:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.limiter.cleanup()
