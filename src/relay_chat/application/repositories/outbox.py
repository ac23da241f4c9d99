from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Protocol

from relay_chat.domain.entities.message import Message
from relay_chat.domain.value_objects.enums import EventKind


@dataclass(frozen=True, slots=True)
class OutboxEntry:
    """An operation waiting for the server to acknowledge it.

    ``previous`` is the local copy before the optimistic change, restored
    when the server rejects the operation.
    """

    entry_id: str
    kind: EventKind
    message: Message
    enqueued_at: datetime
    reaction: str | None = None
    attempts: int = 0
    previous: Message | None = None

    @property
    def correlation_id(self) -> str | None:
        return self.message.correlation_id

    def bump(self) -> OutboxEntry:
        return replace(self, attempts=self.attempts + 1)


class OutboxStore(Protocol):
    async def add(self, entry: OutboxEntry) -> None: ...

    async def list_pending(self) -> list[OutboxEntry]:
        """Entries in enqueue order."""
        ...

    async def remove(self, entry_id: str) -> None: ...

    async def remove_for_correlation(self, correlation_id: str) -> int: ...

    async def mark_attempt(self, entry_id: str) -> None: ...
