"""Handshake-time credential check."""
from __future__ import annotations

import logging

import jwt

from relay_chat.application.dto.principal import Principal
from relay_chat.application.exceptions import AuthError
from relay_chat.application.ports.auth import TokenVerifier

logger = logging.getLogger(__name__)


async def authenticate(token: str | None, verifier: TokenVerifier) -> Principal:
    """Return the verified identity or raise AuthError with a user-facing reason."""
    if token is None:
        raise AuthError("Authentication token required")
    if not isinstance(token, str) or not token.strip():
        raise AuthError("Invalid authentication token format")

    try:
        return await verifier.verify(token.strip())
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("Authentication token expired, please log in again") from exc
    except jwt.MissingRequiredClaimError as exc:
        raise AuthError(f"Invalid token: {exc}") from exc
    except jwt.InvalidTokenError as exc:
        logger.debug("Token rejected: %s", exc)
        if "identification" in str(exc):
            raise AuthError("Invalid token: missing user identification") from exc
        raise AuthError("Invalid authentication token") from exc
    except Exception as exc:
        logger.exception("Unexpected token verification failure")
        raise AuthError(f"Authentication failed: {exc}") from exc
