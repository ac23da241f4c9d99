"""Text search over stored messages."""
from __future__ import annotations

from relay_chat.domain.entities.message import Message
from relay_chat.infrastructure.store._cursor import sort_key


def matches(message: Message, terms: list[str]) -> int:
    """Count of query terms found in the message text, case-insensitively."""
    text = message.text.lower()
    return sum(1 for term in terms if term in text)


def search_page(
    live: list[Message], query: str, page: int, limit: int,
) -> tuple[list[Message], int]:
    """Messages matching any term of ``query``, newest first, with the match count."""
    terms = query.lower().split()
    found = [m for m in live if matches(m, terms)]
    found.sort(key=sort_key, reverse=True)
    start = page * limit
    return found[start:start + limit], len(found)
