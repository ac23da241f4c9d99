from __future__ import annotations

from relay_chat.domain.entities.message import Message
from relay_chat.infrastructure.store._cursor import page_before, sort_key
from relay_chat.infrastructure.store._search import search_page


class InMemoryMessageStore:
    """Process-local message store; insertion order is creation order."""

    def __init__(self) -> None:
        self._messages: dict[str, Message] = {}
        self._by_correlation: dict[tuple[str, str], str] = {}

    async def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    async def put(self, message: Message) -> None:
        assert message.id is not None
        self._messages[message.id] = message
        if message.correlation_id:
            self._by_correlation.setdefault((message.author_id, message.correlation_id), message.id)

    async def delete(self, message_id: str) -> None:
        message = self._messages.pop(message_id, None)
        if message is not None and message.correlation_id:
            self._by_correlation.pop((message.author_id, message.correlation_id), None)

    async def create_if_not_exists(self, message: Message) -> tuple[Message, bool]:
        if message.correlation_id:
            existing_id = self._by_correlation.get((message.author_id, message.correlation_id))
            if existing_id is not None and existing_id in self._messages:
                return self._messages[existing_id], False
        await self.put(message)
        return message, True

    async def list_page(self, page: int, limit: int) -> tuple[list[Message], int]:
        live = self._live()
        newest_first = sorted(live, key=sort_key, reverse=True)
        start = page * limit
        return newest_first[start:start + limit], len(live)

    async def list_before(self, cursor: str | None, limit: int) -> tuple[list[Message], str | None]:
        return page_before(self._live(), cursor, limit)

    async def search(self, query: str, page: int, limit: int) -> tuple[list[Message], int]:
        return search_page(self._live(), query, page, limit)

    def _live(self) -> list[Message]:
        return [m for m in self._messages.values() if not m.is_deleted]

    async def list_replies(self, parent_id: str) -> list[Message]:
        return [
            m for m in self._messages.values()
            if m.parent_id == parent_id and not m.is_deleted
        ]
