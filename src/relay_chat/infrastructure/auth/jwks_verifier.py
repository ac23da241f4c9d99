from __future__ import annotations

import asyncio
import logging
from typing import Sequence

import jwt
from jwt import PyJWKClient

from relay_chat.application.dto.principal import Principal
from relay_chat.infrastructure.auth.claims import principal_from_claims

logger = logging.getLogger(__name__)


class JWKSVerifier:
    """Verify handshake tokens against keys published at a JWKS endpoint.

    Key lookup may hit the network, so it runs in a worker thread to keep
    the event loop free while a socket is being admitted.
    """

    def __init__(
        self,
        jwks_url: str,
        *,
        algorithms: Sequence[str] = ("RS256", "ES256"),
        cache_ttl_seconds: int = 300,
    ) -> None:
        self._algorithms = list(algorithms)
        self._jwk_client = PyJWKClient(jwks_url, lifespan=cache_ttl_seconds)

    async def verify(self, token: str) -> Principal:
        try:
            signing_key = await asyncio.to_thread(self._jwk_client.get_signing_key_from_jwt, token)
        except jwt.PyJWKClientError as exc:
            logger.warning("JWKS key lookup failed: %s", exc)
            raise jwt.InvalidTokenError(str(exc)) from exc
        payload = jwt.decode(
            token,
            signing_key.key,
            algorithms=self._algorithms,
            options={"require": ["exp"]},
        )
        return principal_from_claims(payload)
