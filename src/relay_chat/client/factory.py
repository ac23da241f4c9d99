from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import jwt

from relay_chat.application.dto.principal import Principal
from relay_chat.application.exceptions import AuthError
from relay_chat.client.config import ClientSettings
from relay_chat.client.engine import MessageSyncEngine
from relay_chat.client.history import HttpHistoryClient
from relay_chat.client.outbox import InMemoryOutboxStore, OfflineOutbox
from relay_chat.client.session import SocketSessionManager
from relay_chat.client.transport import WebsocketTransport
from relay_chat.infrastructure.auth.claims import principal_from_claims
from relay_chat.infrastructure.db.repositories.outbox import SqlAlchemyOutboxStore
from relay_chat.infrastructure.db.session import create_schema, make_engine, make_sessionmaker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RelayClient:
    engine: MessageSyncEngine
    session: SocketSessionManager
    history: HttpHistoryClient

    async def start(self) -> None:
        await self.session.connect()

    async def stop(self) -> None:
        await self.session.disconnect()
        await self.history.aclose()


def identity_from_token(token: str) -> Principal:
    """Read the user out of the token locally; the server verifies the signature."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
        return principal_from_claims(claims)
    except jwt.InvalidTokenError as exc:
        raise AuthError(f"Invalid authentication token: {exc}") from exc


async def build_client(
    credential_provider: Callable[[], str | None],
    settings: ClientSettings | None = None,
    *,
    durable: bool = True,
) -> RelayClient:
    cfg = settings or ClientSettings()
    token = credential_provider()
    if not token:
        raise AuthError("Authentication token required")
    identity = identity_from_token(token)

    if durable:
        db_engine = make_engine(cfg.outbox_url)
        await create_schema(db_engine)
        store = SqlAlchemyOutboxStore(make_sessionmaker(db_engine))
    else:
        store = InMemoryOutboxStore()

    session = SocketSessionManager(
        WebsocketTransport(cfg.ws_url, open_timeout=cfg.HANDSHAKE_TIMEOUT),
        credential_provider,
        base_delay=cfg.RECONNECT_BASE_DELAY,
        max_delay=cfg.RECONNECT_MAX_DELAY,
        jitter=cfg.RECONNECT_JITTER,
        handshake_timeout=cfg.HANDSHAKE_TIMEOUT,
        request_timeout=cfg.REQUEST_TIMEOUT,
    )
    history = HttpHistoryClient(cfg.SERVER_URL, credential_provider)
    engine = MessageSyncEngine(
        identity,
        session,
        OfflineOutbox(store),
        credential_provider,
        history=history,
        page_size=cfg.HISTORY_PAGE_SIZE,
    )
    logger.info("Client for %s ready (outbox: %s)", identity.username, cfg.OUTBOX_PATH if durable else "memory")
    return RelayClient(engine=engine, session=session, history=history)
