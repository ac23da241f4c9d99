from __future__ import annotations

from datetime import datetime
from typing import Any

from relay_chat.application.repositories.outbox import OutboxEntry
from relay_chat.domain.entities.message import Message
from relay_chat.domain.value_objects.enums import DeliveryState, EventKind
from relay_chat.infrastructure.db.models.outbox import OutboxEntryModel


def message_to_record(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "correlation_id": message.correlation_id,
        "author_id": message.author_id,
        "author_name": message.author_name,
        "text": message.text,
        "created_at": message.created_at.isoformat(),
        "edited_at": message.edited_at.isoformat() if message.edited_at else None,
        "parent_id": message.parent_id,
        "reactions": {symbol: sorted(voters) for symbol, voters in message.reactions.items()},
        "is_deleted": message.is_deleted,
        "delivery_state": message.delivery_state.value,
    }


def record_to_message(record: dict[str, Any]) -> Message:
    edited_at = record.get("edited_at")
    return Message(
        id=record.get("id"),
        correlation_id=record.get("correlation_id"),
        author_id=record["author_id"],
        author_name=record.get("author_name", ""),
        text=record["text"],
        created_at=datetime.fromisoformat(record["created_at"]),
        edited_at=datetime.fromisoformat(edited_at) if edited_at else None,
        parent_id=record.get("parent_id"),
        reactions={symbol: frozenset(voters) for symbol, voters in record.get("reactions", {}).items()},
        is_deleted=record.get("is_deleted", False),
        delivery_state=DeliveryState(record.get("delivery_state", DeliveryState.PENDING)),
    )


def model_to_entity(model: OutboxEntryModel) -> OutboxEntry:
    return OutboxEntry(
        entry_id=model.entry_id,
        kind=EventKind(model.kind),
        message=record_to_message(model.message),
        enqueued_at=model.enqueued_at,
        reaction=model.reaction,
        attempts=model.attempts,
        previous=record_to_message(model.previous) if model.previous else None,
    )


def entity_to_model(entity: OutboxEntry) -> OutboxEntryModel:
    return OutboxEntryModel(
        entry_id=entity.entry_id,
        kind=entity.kind.value,
        correlation_id=entity.correlation_id,
        message=message_to_record(entity.message),
        reaction=entity.reaction,
        previous=message_to_record(entity.previous) if entity.previous else None,
        attempts=entity.attempts,
        enqueued_at=entity.enqueued_at,
    )
