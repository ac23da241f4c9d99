from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from relay_chat.application.exceptions import AuthError, TransportError

logger = logging.getLogger(__name__)


class HttpHistoryClient:
    """Fetch-initial / fetch-more over ``GET /api/messages``."""

    def __init__(
        self,
        base_url: str,
        credential_provider: Callable[[], str | None],
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credential_provider = credential_provider
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=10.0)

    async def fetch_page(
        self, limit: int, before: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        token = self._credential_provider()
        if not token:
            raise AuthError("Authentication token not found")
        params: dict[str, Any] = {"limit": limit}
        if before:
            params["before"] = before
        try:
            response = await self._client.get(
                "/api/messages",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"History fetch failed: {exc}") from exc
        if response.status_code == 401:
            raise AuthError(response.json().get("detail", "Unauthorized"))
        response.raise_for_status()

        body = response.json()
        pagination = body.get("pagination", {})
        messages = body.get("messages", [])
        logger.debug("Fetched %d messages before %s", len(messages), before or "now")
        return messages, pagination.get("nextCursor")

    async def aclose(self) -> None:
        await self._client.aclose()
