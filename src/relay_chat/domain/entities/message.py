from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Mapping

from relay_chat.domain.value_objects.enums import DeliveryState

Reactions = Mapping[str, frozenset[str]]


@dataclass(frozen=True, slots=True)
class Message:
    """A chat message, either a local optimistic copy or a canonical one.

    ``id`` is ``None`` until the server has stamped the message. While the
    message is pending (or failed) its identity is ``correlation_id``; once
    sent, ``id`` takes over and ``correlation_id`` only dedupes late echoes.
    """

    id: str | None
    correlation_id: str | None
    author_id: str
    author_name: str
    text: str
    created_at: datetime
    edited_at: datetime | None = None
    parent_id: str | None = None
    reactions: Reactions = field(default_factory=dict)
    is_deleted: bool = False
    delivery_state: DeliveryState = DeliveryState.SENT

    @property
    def is_edited(self) -> bool:
        return self.edited_at is not None

    @property
    def is_confirmed(self) -> bool:
        return self.delivery_state == DeliveryState.SENT and self.id is not None

    @property
    def identity(self) -> str:
        if self.is_confirmed:
            assert self.id is not None
            return self.id
        return self.correlation_id or self.id or ""

    def with_text(self, text: str, edited_at: datetime) -> Message:
        return replace(self, text=text, edited_at=edited_at)

    def with_reactions(self, reactions: Reactions) -> Message:
        return replace(self, reactions=dict(reactions))

    def tombstone(self) -> Message:
        return replace(self, is_deleted=True)

    def with_state(self, state: DeliveryState) -> Message:
        return replace(self, delivery_state=state)


def toggle_reaction(reactions: Reactions, symbol: str, author_id: str) -> dict[str, frozenset[str]]:
    """Return a new reaction map with ``author_id`` flipped in ``symbol``'s set."""
    result = dict(reactions)
    voters = set(result.get(symbol, frozenset()))
    if author_id in voters:
        voters.discard(author_id)
    else:
        voters.add(author_id)
    if voters:
        result[symbol] = frozenset(voters)
    else:
        result.pop(symbol, None)
    return result


def set_reaction(reactions: Reactions, symbol: str, author_id: str, present: bool) -> dict[str, frozenset[str]]:
    """Return a new reaction map with ``author_id`` in or out of ``symbol``'s set.

    Applying it twice gives the same map, so a replayed request is harmless.
    """
    result = dict(reactions)
    voters = set(result.get(symbol, frozenset()))
    if present:
        voters.add(author_id)
    else:
        voters.discard(author_id)
    if voters:
        result[symbol] = frozenset(voters)
    else:
        result.pop(symbol, None)
    return result
