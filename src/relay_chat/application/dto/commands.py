"""Typed inbound commands consumed by the mutation pipeline."""
from __future__ import annotations

from dataclasses import dataclass

from relay_chat.domain.value_objects.enums import EventKind


@dataclass(frozen=True, slots=True)
class SendMessageCommand:
    text: str
    correlation_id: str | None = None
    parent_id: str | None = None
    kind: EventKind = EventKind.SEND_MESSAGE


@dataclass(frozen=True, slots=True)
class ReplyToMessageCommand:
    parent_id: str
    text: str
    correlation_id: str | None = None
    kind: EventKind = EventKind.REPLY_TO_MESSAGE


@dataclass(frozen=True, slots=True)
class EditMessageCommand:
    message_id: str
    new_text: str
    kind: EventKind = EventKind.EDIT_MESSAGE


@dataclass(frozen=True, slots=True)
class DeleteMessageCommand:
    message_id: str
    kind: EventKind = EventKind.DELETE_MESSAGE


@dataclass(frozen=True, slots=True)
class ToggleReactionCommand:
    message_id: str
    reaction: str
    add: bool | None = None
    kind: EventKind = EventKind.TOGGLE_REACTION


Command = (
    SendMessageCommand
    | ReplyToMessageCommand
    | EditMessageCommand
    | DeleteMessageCommand
    | ToggleReactionCommand
)
