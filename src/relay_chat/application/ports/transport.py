from __future__ import annotations

from typing import Protocol


class Connection(Protocol):
    """One open socket carrying JSON text frames."""

    async def send(self, raw: str) -> None: ...

    async def recv(self) -> str:
        """Return the next frame; raise TransportError once the socket is gone."""
        ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def open(self, token: str) -> Connection: ...


class HistoryClient(Protocol):
    """Fetch-initial / fetch-more interface of the external message store."""

    async def fetch_page(self, limit: int, before: str | None = None) -> tuple[list[dict], str | None]:
        """Return newest-first raw messages older than ``before`` and the cursor for the next page.

        The cursor is ``None`` once the oldest message has been returned.
        """
        ...
