from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt

from relay_chat.application.dto.principal import Principal
from relay_chat.infrastructure.auth.claims import principal_from_claims


class HS256Verifier:
    """Verify JWTs signed with a shared HS256 secret."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    async def verify(self, token: str) -> Principal:
        payload = jwt.decode(
            token,
            self._secret,
            algorithms=[self._algorithm],
            options={"require": ["exp"]},
        )
        return principal_from_claims(payload)


def issue_token(
    principal: Principal,
    secret: str,
    *,
    algorithm: str = "HS256",
    expires_in: timedelta = timedelta(days=7),
) -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {**principal.as_dict(), "iat": now, "exp": now + expires_in},
        secret,
        algorithm=algorithm,
    )
