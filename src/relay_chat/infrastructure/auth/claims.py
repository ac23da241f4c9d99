from __future__ import annotations

from typing import Any

import jwt

from relay_chat.application.dto.principal import Principal


def principal_from_claims(payload: dict[str, Any]) -> Principal:
    user_id = payload.get("id") or payload.get("sub")
    if not user_id:
        raise jwt.InvalidTokenError("missing user identification")
    username = payload.get("username") or str(user_id)
    return Principal(id=str(user_id), username=str(username))
