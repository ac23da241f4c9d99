from __future__ import annotations

from typing import Protocol

from relay_chat.domain.entities.message import Message


class MessageStore(Protocol):
    """External authoritative message store.

    The pipeline owns validation, stamping and ordering; persistence lives
    behind this port.
    """

    async def get(self, message_id: str) -> Message | None: ...

    async def put(self, message: Message) -> None: ...

    async def delete(self, message_id: str) -> None: ...

    async def create_if_not_exists(self, message: Message) -> tuple[Message, bool]:
        """Insert message. Return (message, created). If (author_id, correlation_id) exists → return existing."""
        ...

    async def list_page(self, page: int, limit: int) -> tuple[list[Message], int]:
        """Return one newest-first page of non-deleted messages and the total count."""
        ...

    async def list_before(self, cursor: str | None, limit: int) -> tuple[list[Message], str | None]:
        """Return up to ``limit`` non-deleted messages older than ``cursor``, newest first.

        The second element is the cursor for the following page, ``None`` when
        nothing older remains.
        """
        ...

    async def search(self, query: str, page: int, limit: int) -> tuple[list[Message], int]:
        """Return one newest-first page of non-deleted messages matching any query term, and the match count."""
        ...

    async def list_replies(self, parent_id: str) -> list[Message]: ...
