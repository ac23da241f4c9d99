from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field

from relay_chat.application.dto.commands import (
    Command,
    DeleteMessageCommand,
    EditMessageCommand,
    ReplyToMessageCommand,
    SendMessageCommand,
    ToggleReactionCommand,
)
from relay_chat.application.dto.events import Notification
from relay_chat.application.dto.principal import Principal
from relay_chat.application.exceptions import ForbiddenError, NotFoundError, ValidationError
from relay_chat.application.ports.clock import Clock, SystemClock
from relay_chat.application.repositories.message import MessageStore
from relay_chat.domain.entities.message import Message, set_reaction, toggle_reaction
from relay_chat.domain.value_objects.enums import NotificationType
from relay_chat.domain.value_objects.ids import new_message_id
from relay_chat.infrastructure.ws.protocol import message_to_wire

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Outcome:
    message: Message
    notifications: list[Notification] = field(default_factory=list)


class MutationPipeline:
    """Validates, stamps, applies and fans out message mutations.

    Errors are raised as application exceptions; the gateway reports them to
    the originating connection only.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        clock: Clock | None = None,
        max_length: int = 500,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._max_length = max_length
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def handle(self, command: Command, principal: Principal) -> Outcome:
        if isinstance(command, SendMessageCommand):
            return await self._create(principal, command.text, command.correlation_id, command.parent_id)
        if isinstance(command, ReplyToMessageCommand):
            if not command.parent_id:
                raise ValidationError("Parent message ID and reply text are required")
            return await self._create(
                principal, command.text, command.correlation_id, command.parent_id, reply=True,
            )
        if isinstance(command, EditMessageCommand):
            return await self._edit(principal, command)
        if isinstance(command, DeleteMessageCommand):
            return await self._delete(principal, command)
        if isinstance(command, ToggleReactionCommand):
            return await self._toggle_reaction(principal, command)
        raise ValidationError(f"Unsupported command: {type(command).__name__}")

    def _clean_text(self, text: str | None, what: str = "Message") -> str:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError(f"{what} text is required")
        cleaned = text.strip()
        if len(cleaned) > self._max_length:
            raise ValidationError(f"{what} is too long (max {self._max_length} characters)")
        return cleaned

    def _lock_for(self, message_id: str) -> asyncio.Lock:
        """Serialises read-modify-write cycles on one message within this process."""
        lock = self._locks.get(message_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[message_id] = lock
        return lock

    async def _require(self, message_id: str) -> Message:
        if not message_id:
            raise ValidationError("Message ID is required")
        message = await self._store.get(message_id)
        if message is None:
            raise NotFoundError(f"Message not found: {message_id}")
        return message

    async def _create(
        self,
        principal: Principal,
        text: str,
        correlation_id: str | None,
        parent_id: str | None,
        *,
        reply: bool = False,
    ) -> Outcome:
        cleaned = self._clean_text(text, "Reply" if reply else "Message")
        if parent_id:
            parent = await self._store.get(parent_id)
            if parent is None:
                raise NotFoundError(f"Parent message not found: {parent_id}")

        message = Message(
            id=new_message_id(),
            correlation_id=correlation_id,
            author_id=principal.id,
            author_name=principal.username,
            text=cleaned,
            created_at=self._clock.now(),
            parent_id=parent_id,
        )
        message, created = await self._store.create_if_not_exists(message)
        event = NotificationType.REPLY_CREATED if reply else NotificationType.MESSAGE_CREATED
        if not created:
            logger.info(
                "Duplicate create from %s (correlation=%s), echoing %s to origin",
                principal.id, correlation_id, message.id,
            )
            return Outcome(message, [Notification(event, message_to_wire(message), "origin")])

        logger.info(
            "Message created: id=%s author=%s correlation=%s parent=%s",
            message.id, principal.id, correlation_id, parent_id,
        )
        return Outcome(message, [Notification(event, message_to_wire(message))])

    async def _edit(self, principal: Principal, command: EditMessageCommand) -> Outcome:
        if not command.message_id:
            raise ValidationError("Message ID and text are required")
        cleaned = self._clean_text(command.new_text)
        async with self._lock_for(command.message_id):
            message = await self._require(command.message_id)
            if message.author_id != principal.id:
                raise ForbiddenError("Not authorized to edit this message")
            if message.is_deleted:
                raise ValidationError("Cannot edit a deleted message")

            edited = message.with_text(cleaned, self._clock.now())
            await self._store.put(edited)
        logger.info("Message edited: id=%s author=%s", edited.id, principal.id)
        return Outcome(edited, [Notification(NotificationType.MESSAGE_EDITED, message_to_wire(edited))])

    async def _delete(self, principal: Principal, command: DeleteMessageCommand) -> Outcome:
        async with self._lock_for(command.message_id):
            message = await self._require(command.message_id)
            if message.author_id != principal.id:
                raise ForbiddenError("Not authorized to delete this message")

            tombstone = message.tombstone()
            if message.is_deleted:
                return Outcome(
                    tombstone,
                    [Notification(NotificationType.MESSAGE_DELETED, message_to_wire(tombstone), "origin")],
                )

            # Replies keep pointing at a soft-deleted parent; leaves are removed outright.
            if await self._store.list_replies(command.message_id):
                await self._store.put(tombstone)
            else:
                await self._store.delete(command.message_id)
        logger.info("Message deleted: id=%s author=%s", message.id, principal.id)
        return Outcome(tombstone, [Notification(NotificationType.MESSAGE_DELETED, message_to_wire(tombstone))])

    async def _toggle_reaction(self, principal: Principal, command: ToggleReactionCommand) -> Outcome:
        if not command.reaction or not command.reaction.strip():
            raise ValidationError("Invalid reaction data")
        symbol = command.reaction.strip()
        async with self._lock_for(command.message_id):
            message = await self._require(command.message_id)
            if message.is_deleted:
                raise ValidationError("Cannot react to a deleted message")

            # An explicit end state makes a replay of the same request a no-op.
            if command.add is None:
                reactions = toggle_reaction(message.reactions, symbol, principal.id)
            else:
                reactions = set_reaction(message.reactions, symbol, principal.id, command.add)
            updated = message.with_reactions(reactions)
            await self._store.put(updated)
        logger.debug("Reaction %s set to %s on %s by %s", symbol, command.add, message.id, principal.id)
        return Outcome(updated, [Notification(NotificationType.REACTION_UPDATED, message_to_wire(updated))])
