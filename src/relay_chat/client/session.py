"""Socket session manager: one long-lived, authenticated, self-healing connection."""
from __future__ import annotations

import asyncio
import inspect
import logging
import random
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from relay_chat.application.exceptions import AuthError, TransportError
from relay_chat.application.ports.transport import Connection, Transport
from relay_chat.domain.value_objects.enums import ConnectionState, NotificationType
from relay_chat.infrastructure.ws.protocol import WsInbound, WsOutbound

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None] | None]
StateListener = Callable[[ConnectionState], None]
ConnectHook = Callable[[], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Ack:
    ok: bool
    message: dict[str, Any] | None = None
    error: str | None = None
    retry_after: int | None = None
    code: str | None = None

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Ack:
        return cls(
            ok=bool(data.get("ok")),
            message=data.get("message"),
            error=data.get("error"),
            retry_after=data.get("retryAfter"),
            code=data.get("code"),
        )


class _Superseded(Exception):
    """A connection attempt finished after disconnect() had been called."""


class SocketSessionManager:
    """State machine ``disconnected → connecting → connected → (disconnected | reconnecting)``.

    Every connect cycle runs under a generation number. ``disconnect()``
    bumps it before doing anything else, so an attempt that completes late
    sees the mismatch, closes its socket and never becomes visible.
    """

    def __init__(
        self,
        transport: Transport,
        credential_provider: Callable[[], str | None],
        *,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        jitter: float = 0.2,
        handshake_timeout: float = 10.0,
        request_timeout: float = 10.0,
        rng: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._credential_provider = credential_provider
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self._handshake_timeout = handshake_timeout
        self._request_timeout = request_timeout
        self._rng = rng
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._generation = 0
        self._conn: Connection | None = None
        self._socket_id: str | None = None
        self._reader: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._hooks_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[Ack]] = {}

        self._handlers: dict[str, list[EventHandler]] = {}
        self._state_listeners: list[StateListener] = []
        self._auth_error_listeners: list[Callable[[AuthError], None]] = []
        self._connect_hooks: list[ConnectHook] = []

    # -- observation -----------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def socket_id(self) -> str | None:
        return self._socket_id

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def on_auth_error(self, listener: Callable[[AuthError], None]) -> None:
        self._auth_error_listeners.append(listener)

    def add_connect_hook(self, hook: ConnectHook) -> None:
        """Run ``hook`` after every successful (re)connect, in registration order."""
        self._connect_hooks.append(hook)

    def backoff_delay(self, attempt: int) -> float:
        delay = min(self._max_delay, self._base_delay * (2 ** attempt))
        if self._jitter:
            delay *= 1 + self._jitter * (2 * self._rng() - 1)
        return max(0.0, min(delay, self._max_delay))

    # -- lifecycle -------------------------------------------------------

    async def connect(self) -> None:
        """Open the session; raises AuthError when the server rejects the credential.

        A transport failure on the first attempt hands over to the
        reconnect loop instead of raising.
        """
        if self._state != ConnectionState.DISCONNECTED:
            return
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._open(generation)
        except _Superseded:
            return
        except AuthError as exc:
            if generation == self._generation:
                self._set_state(ConnectionState.DISCONNECTED)
                self._notify_auth_error(exc)
            raise
        except TransportError as exc:
            if generation == self._generation:
                logger.warning("Initial connect failed: %s", exc)
                self._start_reconnect(generation)

    async def disconnect(self) -> None:
        """Explicit close from any state; halts pending backoff."""
        self._generation += 1
        current = asyncio.current_task()
        for task in (self._reconnect_task, self._reader, self._hooks_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reconnect_task = self._reader = self._hooks_task = None

        conn, self._conn = self._conn, None
        self._socket_id = None
        self._fail_pending(TransportError("Disconnected"))
        self._set_state(ConnectionState.DISCONNECTED)
        if conn is not None:
            try:
                await conn.close()
            except Exception:
                logger.debug("Error while closing connection", exc_info=True)

    async def _open(self, generation: int) -> None:
        token = self._credential_provider()
        if not token:
            raise AuthError("Authentication token required")

        conn = await self._transport.open(token)
        if generation != self._generation:
            await conn.close()
            raise _Superseded()

        try:
            welcome = await asyncio.wait_for(self._await_welcome(conn), self._handshake_timeout)
        except asyncio.TimeoutError as exc:
            await conn.close()
            raise TransportError("Handshake timed out") from exc
        except BaseException:
            await conn.close()
            raise

        if generation != self._generation:
            await conn.close()
            raise _Superseded()

        self._conn = conn
        self._socket_id = welcome.get("socketId")
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected as socket %s", self._socket_id)
        self._reader = asyncio.create_task(self._read_loop(conn, generation), name="session-reader")
        self._hooks_task = asyncio.create_task(self._run_connect_hooks(generation), name="session-connect-hooks")

    async def _await_welcome(self, conn: Connection) -> dict[str, Any]:
        while True:
            frame = self._parse(await conn.recv())
            if frame is None:
                continue
            if frame.type == NotificationType.CONNECTED:
                return frame.data if isinstance(frame.data, dict) else {}
            if frame.type == NotificationType.CONNECT_ERROR:
                message = frame.data.get("message") if isinstance(frame.data, dict) else None
                raise AuthError(message or "Authentication failed")
            await self._dispatch(frame)

    async def _read_loop(self, conn: Connection, generation: int) -> None:
        try:
            while True:
                frame = self._parse(await conn.recv())
                if frame is not None:
                    await self._dispatch(frame)
        except TransportError as exc:
            if generation != self._generation:
                return
            logger.warning("Connection dropped: %s", exc)
            self._conn = None
            self._socket_id = None
            self._fail_pending(exc)
            self._start_reconnect(generation)

    def _start_reconnect(self, generation: int) -> None:
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_loop(generation), name="session-reconnect",
        )

    async def _reconnect_loop(self, generation: int) -> None:
        attempt = 0
        while generation == self._generation:
            delay = self.backoff_delay(attempt)
            logger.info("Reconnecting in %.2fs (attempt %d)", delay, attempt + 1)
            await self._sleep(delay)
            if generation != self._generation:
                return
            try:
                await self._open(generation)
                return
            except _Superseded:
                return
            except AuthError as exc:
                if generation == self._generation:
                    self._set_state(ConnectionState.DISCONNECTED)
                    self._notify_auth_error(exc)
                return
            except TransportError as exc:
                logger.debug("Reconnect attempt %d failed: %s", attempt + 1, exc)
                attempt += 1

    async def _run_connect_hooks(self, generation: int) -> None:
        for hook in self._connect_hooks:
            if generation != self._generation:
                return
            try:
                await hook()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Post-connect hook %r failed", hook)

    # -- messaging -------------------------------------------------------

    async def emit(self, event: str, data: Any) -> None:
        await self._send(WsInbound(type=event, data=data))

    async def request(self, event: str, data: Any, timeout: float | None = None) -> Ack:
        """Send ``event`` and wait for the server's acknowledgement."""
        ref = uuid.uuid4().hex
        future: asyncio.Future[Ack] = asyncio.get_running_loop().create_future()
        self._pending[ref] = future
        try:
            await self._send(WsInbound(type=event, data=data, ref=ref))
            return await asyncio.wait_for(future, timeout or self._request_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"No acknowledgement for {event}") from exc
        finally:
            self._pending.pop(ref, None)

    async def _send(self, frame: WsInbound) -> None:
        conn = self._conn
        if conn is None or not self.is_connected:
            raise TransportError("Not connected")
        await conn.send(frame.model_dump_json())

    def _parse(self, raw: str) -> WsOutbound | None:
        try:
            return WsOutbound.model_validate_json(raw)
        except PydanticValidationError:
            logger.warning("Ignoring malformed frame")
            return None

    async def _dispatch(self, frame: WsOutbound) -> None:
        if frame.type == NotificationType.ACK:
            data = frame.data if isinstance(frame.data, dict) else {}
            future = self._pending.get(data.get("ref", ""))
            if future is not None and not future.done():
                future.set_result(Ack.from_wire(data))
            return

        for handler in self._handlers.get(frame.type, []):
            try:
                result = handler(frame.data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed", frame.type)

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError(str(exc)))
        self._pending.clear()

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.debug("Session state %s → %s", self._state, state)
        self._state = state
        for listener in self._state_listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    def _notify_auth_error(self, exc: AuthError) -> None:
        logger.error("Authentication rejected: %s", exc.detail)
        for listener in self._auth_error_listeners:
            listener(exc)
