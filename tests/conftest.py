"""Shared test fixtures."""
from __future__ import annotations

import asyncio
import inspect
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from relay_chat.application.dto.principal import Principal
from relay_chat.application.exceptions import AppError, TransportError
from relay_chat.client.session import Ack
from relay_chat.domain.entities.message import Message
from relay_chat.domain.value_objects.enums import DeliveryState
from relay_chat.infrastructure.auth.hs256_verifier import issue_token
from relay_chat.infrastructure.ws.protocol import message_to_wire, parse_command
from relay_chat.services.message_pipeline import MutationPipeline

TEST_SECRET = "test-secret"


@pytest.fixture
def alice() -> Principal:
    return Principal(id="u-alice", username="alice")


@pytest.fixture
def bob() -> Principal:
    return Principal(id="u-bob", username="bob")


def make_token(principal: Principal, *, expires_in: timedelta = timedelta(days=7)) -> str:
    return issue_token(principal, TEST_SECRET, expires_in=expires_in)


def make_message(
    *,
    message_id: str | None = "m1",
    correlation_id: str | None = "c1",
    author_id: str = "u-alice",
    author_name: str = "alice",
    text: str = "hello",
    parent_id: str | None = None,
    state: DeliveryState = DeliveryState.SENT,
) -> Message:
    return Message(
        id=message_id,
        correlation_id=correlation_id,
        author_id=author_id,
        author_name=author_name,
        text=text,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        parent_id=parent_id,
        delivery_state=state,
    )


async def settle(rounds: int = 20) -> None:
    """Let scheduled tasks run to quiescence."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self._t = start
        self._origin = start

    def now(self) -> datetime:
        return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=self._t - self._origin)

    def monotonic(self) -> float:
        return self._t

    def advance(self, seconds: float) -> None:
        self._t += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# -- socket session fakes ------------------------------------------------


class FakeConnection:
    def __init__(self) -> None:
        self.incoming: asyncio.Queue[str | None] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.on_send: Callable[[FakeConnection, dict[str, Any]], None] | None = None

    def push(self, event: str, data: Any) -> None:
        self.incoming.put_nowait(json.dumps({"type": event, "data": data}))

    def drop(self) -> None:
        self.incoming.put_nowait(None)

    async def send(self, raw: str) -> None:
        if self.closed:
            raise TransportError("closed")
        frame = json.loads(raw)
        self.sent.append(frame)
        if self.on_send is not None:
            self.on_send(self, frame)

    async def recv(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise TransportError("connection lost")
        return item

    async def close(self) -> None:
        self.closed = True
        self.incoming.put_nowait(None)


class FakeTransport:
    """Hands out FakeConnections that greet with ``connected`` (or ``connect_error``)."""

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.tokens: list[str] = []
        self.failures = 0
        self.reject: str | None = None
        self.gate: asyncio.Event | None = None
        self.on_send: Callable[[FakeConnection, dict[str, Any]], None] | None = None

    async def open(self, token: str) -> FakeConnection:
        self.tokens.append(token)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            self.failures -= 1
            raise TransportError("connection refused")
        conn = FakeConnection()
        conn.on_send = self.on_send
        if self.reject:
            conn.push("connect_error", {"message": self.reject})
        else:
            conn.push("connected", {"socketId": f"s{len(self.connections) + 1}", "user": {}})
        self.connections.append(conn)
        return conn

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# -- engine fakes ----------------------------------------------------------


class FakeSession:
    """Stands in for SocketSessionManager; requests run through a real pipeline.

    Broadcast echoes are delivered to the registered handlers before the
    acknowledgement returns, which is the order a real server produces.
    """

    def __init__(self, pipeline: MutationPipeline, principal: Principal, *, connected: bool = True) -> None:
        self.pipeline = pipeline
        self.principal = principal
        self.connected = connected
        self.handlers: dict[str, list[Callable[[Any], Any]]] = {}
        self.hooks: list[Callable[[], Any]] = []
        self.requests: list[tuple[str, Any]] = []
        self.fail_with: Exception | None = None
        self.echo = True
        self.peers: list[FakeSession] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    def on(self, event: str, handler: Callable[[Any], Any]) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def add_connect_hook(self, hook: Callable[[], Any]) -> None:
        self.hooks.append(hook)

    async def request(self, event: str, data: Any, timeout: float | None = None) -> Ack:
        if not self.connected:
            raise TransportError("Not connected")
        self.requests.append((str(event), data))
        if self.fail_with is not None:
            raise self.fail_with
        try:
            outcome = await self.pipeline.handle(parse_command(event, data), self.principal)
        except AppError as exc:
            return Ack(ok=False, error=exc.detail, code=exc.code)
        if self.echo:
            for note in outcome.notifications:
                await self.fire(note.type, note.data)
                if note.audience == "all":
                    for peer in self.peers:
                        await peer.fire(note.type, note.data)
        return Ack(ok=True, message=message_to_wire(outcome.message))

    async def fire(self, event: str, data: Any) -> None:
        for handler in self.handlers.get(event, []):
            result = handler(data)
            if inspect.isawaitable(result):
                await result

    async def go_online(self) -> None:
        self.connected = True
        for hook in self.hooks:
            await hook()


# -- store fakes -----------------------------------------------------------


class FakeRedis:
    """The handful of string/list commands the store uses.

    With ``yield_on_get`` every read gives other tasks a turn, the way a
    network round trip does.
    """

    def __init__(self, *, yield_on_get: bool = False) -> None:
        self.strings: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.yield_on_get = yield_on_get

    async def get(self, key):
        if self.yield_on_get:
            await asyncio.sleep(0)
        return self.strings.get(key)

    async def set(self, key, value, nx=False):
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        return True

    async def mget(self, keys):
        return [self.strings.get(k) for k in keys]

    async def delete(self, *keys):
        return sum(1 for k in keys if self.strings.pop(k, None) is not None)

    async def rpush(self, key, *values):
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    async def lrem(self, key, count, value):
        before = self.lists.get(key, [])
        self.lists[key] = [v for v in before if v != value]
        return len(before) - len(self.lists[key])

    async def ping(self):
        return True
