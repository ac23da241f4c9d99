"""WebSocket message envelope and payload models."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from relay_chat.application.dto.commands import (
    Command,
    DeleteMessageCommand,
    EditMessageCommand,
    ReplyToMessageCommand,
    SendMessageCommand,
    ToggleReactionCommand,
)
from relay_chat.application.exceptions import ValidationError
from relay_chat.domain.entities.message import Message
from relay_chat.domain.value_objects.enums import DeliveryState, EventKind


class WsInbound(BaseModel):
    """Client → Server."""

    type: str  # sendMessage | editMessage | deleteMessage | toggleReaction | replyToMessage | ping
    data: Any = None
    ref: str | None = None


class WsOutbound(BaseModel):
    """Server → Client."""

    type: str  # sendMessage | editMessage | deleteMessage | toggleReaction | replyCreated | onlineUsers | ...
    data: Any = Field(default_factory=dict)


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SendMessagePayload(_Wire):
    text: str
    correlation_id: str | None = None
    parent_id: str | None = None


class ReplyToMessagePayload(_Wire):
    parent_id: str
    text: str
    correlation_id: str | None = None


class EditMessagePayload(_Wire):
    message_id: str
    new_text: str


class ToggleReactionPayload(_Wire):
    message_id: str
    reaction: str
    add: bool | None = None


class MessagePayload(_Wire):
    """Canonical message as broadcast by the server."""

    id: str
    correlation_id: str | None = None
    author_id: str
    author_name: str = ""
    text: str
    created_at: datetime
    edited_at: datetime | None = None
    is_edited: bool = False
    is_deleted: bool = False
    parent_id: str | None = None
    reactions: dict[str, list[str]] = Field(default_factory=dict)

    @classmethod
    def from_entity(cls, message: Message) -> MessagePayload:
        assert message.id is not None, "only stamped messages go on the wire"
        return cls(
            id=message.id,
            correlation_id=message.correlation_id,
            author_id=message.author_id,
            author_name=message.author_name,
            text=message.text,
            created_at=message.created_at,
            edited_at=message.edited_at,
            is_edited=message.is_edited,
            is_deleted=message.is_deleted,
            parent_id=message.parent_id,
            reactions={symbol: sorted(voters) for symbol, voters in message.reactions.items()},
        )

    def to_entity(self) -> Message:
        return Message(
            id=self.id,
            correlation_id=self.correlation_id,
            author_id=self.author_id,
            author_name=self.author_name,
            text=self.text,
            created_at=self.created_at,
            edited_at=self.edited_at,
            parent_id=self.parent_id,
            reactions={symbol: frozenset(voters) for symbol, voters in self.reactions.items() if voters},
            is_deleted=self.is_deleted,
            delivery_state=DeliveryState.SENT,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def message_to_wire(message: Message) -> dict[str, Any]:
    return MessagePayload.from_entity(message).to_wire()


def message_from_wire(data: Any) -> Message:
    try:
        return MessagePayload.model_validate(data).to_entity()
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed message payload: {exc.error_count()} error(s)") from exc


def _delete_target(data: Any) -> str:
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        target = data.get("id") or data.get("messageId")
        if isinstance(target, str):
            return target
    return ""


def parse_command(event_type: str, data: Any) -> Command:
    """Turn an inbound frame into a typed command or raise ValidationError."""
    try:
        kind = EventKind(event_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown event type: {event_type}") from exc

    if kind == EventKind.DELETE_MESSAGE:
        return DeleteMessageCommand(message_id=_delete_target(data))

    if not isinstance(data, dict):
        raise ValidationError(f"{kind} payload must be an object")

    try:
        if kind == EventKind.SEND_MESSAGE:
            p = SendMessagePayload.model_validate(data)
            return SendMessageCommand(text=p.text, correlation_id=p.correlation_id, parent_id=p.parent_id)
        if kind == EventKind.REPLY_TO_MESSAGE:
            r = ReplyToMessagePayload.model_validate(data)
            return ReplyToMessageCommand(parent_id=r.parent_id, text=r.text, correlation_id=r.correlation_id)
        if kind == EventKind.EDIT_MESSAGE:
            e = EditMessagePayload.model_validate(data)
            return EditMessageCommand(message_id=e.message_id, new_text=e.new_text)
        t = ToggleReactionPayload.model_validate(data)
        return ToggleReactionCommand(message_id=t.message_id, reaction=t.reaction, add=t.add)
    except PydanticValidationError as exc:
        missing = ", ".join(str(err["loc"][0]) for err in exc.errors() if err.get("loc"))
        raise ValidationError(f"Invalid {kind} payload: {missing or 'malformed'}") from exc
