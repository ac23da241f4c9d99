"""FastAPI dependency injection helpers."""
from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from relay_chat.application.dto.principal import Principal
from relay_chat.application.exceptions import AuthError
from relay_chat.application.ports.auth import TokenVerifier
from relay_chat.application.repositories.message import MessageStore
from relay_chat.config import settings
from relay_chat.infrastructure.auth.hs256_verifier import HS256Verifier
from relay_chat.infrastructure.auth.jwks_verifier import JWKSVerifier
from relay_chat.services.auth_gate import authenticate

_bearer_scheme = HTTPBearer()


def _get_verifier() -> TokenVerifier:
    if settings.JWT_VERIFY_MODE == "jwks":
        assert settings.JWKS_URL, "JWKS_URL must be set when JWT_VERIFY_MODE=jwks"
        return JWKSVerifier(settings.JWKS_URL)
    return HS256Verifier(settings.JWT_SECRET, settings.JWT_ALGORITHM)


_verifier: TokenVerifier | None = None


def get_verifier() -> TokenVerifier:
    global _verifier  # noqa: PLW0603
    if _verifier is None:
        _verifier = _get_verifier()
    return _verifier


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


StoreDep = Annotated[MessageStore, Depends(get_store)]


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(_bearer_scheme)],
) -> Principal:
    try:
        return await authenticate(credentials.credentials, get_verifier())
    except AuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.detail,
        ) from exc


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
