"""Client-side optimistic state engine.

Operations mutate the local, ordered message list before anything touches
the network. Canonical copies coming back from the server (acknowledgements
and broadcasts alike) go through one reconciliation path:

* look the entry up by correlation id, then by server id;
* overwrite it in place when found, append it when not;
* never let a create echo for an already-confirmed entry win (late echo).
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from relay_chat.application.dto.principal import Principal
from relay_chat.application.exceptions import AppError, RateLimitError, ReconciliationConflict, TransportError
from relay_chat.application.ports.transport import HistoryClient
from relay_chat.application.repositories.outbox import OutboxEntry
from relay_chat.client.outbox import DROP, OfflineOutbox
from relay_chat.client.session import Ack
from relay_chat.domain.entities.message import Message, toggle_reaction
from relay_chat.domain.value_objects.enums import DeliveryState, EventKind, NotificationType
from relay_chat.domain.value_objects.ids import new_correlation_id
from relay_chat.infrastructure.ws.protocol import message_from_wire

logger = logging.getLogger(__name__)

_CREATE_KINDS = frozenset({EventKind.SEND_MESSAGE, EventKind.REPLY_TO_MESSAGE})


class SessionLike(Protocol):
    @property
    def is_connected(self) -> bool: ...

    async def request(self, event: str, data: Any, timeout: float | None = None) -> Ack: ...

    def on(self, event: str, handler: Callable[[Any], Any]) -> None: ...

    def add_connect_hook(self, hook: Callable[[], Any]) -> None: ...


class MessageSyncEngine:
    def __init__(
        self,
        identity: Principal,
        session: SessionLike,
        outbox: OfflineOutbox,
        credential_provider: Callable[[], str | None],
        *,
        history: HistoryClient | None = None,
        page_size: int = 20,
    ) -> None:
        self.identity = identity
        self._session = session
        self._outbox = outbox
        self._credential_provider = credential_provider
        self._history = history
        self._page_size = page_size

        self._messages: list[Message] = []
        self._superseded: set[str] = set()
        self._purged: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._change_listeners: list[Callable[[], None]] = []
        self._notice_listeners: list[Callable[[str, dict[str, Any]], None]] = []

        self.replying_to: str | None = None
        self.online_users: list[dict[str, str]] = []
        self.last_notice: tuple[str, dict[str, Any]] | None = None
        self.has_more = True
        self._cursor: str | None = None

        self._bind(session)

    def _bind(self, session: SessionLike) -> None:
        for event in (NotificationType.MESSAGE_CREATED, "message", NotificationType.REPLY_CREATED):
            session.on(event, self._on_created)
        session.on(NotificationType.MESSAGE_EDITED, self._on_replaced)
        session.on(NotificationType.MESSAGE_DELETED, self._on_replaced)
        for event in (NotificationType.REACTION_UPDATED, "reaction"):
            session.on(event, self._on_reaction)
        session.on(NotificationType.ONLINE_USERS, self._on_online_users)
        session.on(NotificationType.RATE_LIMIT, self._on_rate_limit)
        session.on(NotificationType.ERROR, self._on_error)
        session.add_connect_hook(self._after_connect)

    # -- state -----------------------------------------------------------

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def find(self, key: str) -> Message | None:
        index = self._index_of(key)
        return None if index is None else self._messages[index]

    def on_change(self, listener: Callable[[], None]) -> None:
        self._change_listeners.append(listener)

    def on_notice(self, listener: Callable[[str, dict[str, Any]], None]) -> None:
        self._notice_listeners.append(listener)

    def start_reply(self, parent_id: str) -> None:
        self.replying_to = parent_id

    def cancel_reply(self) -> None:
        self.replying_to = None

    # -- operations ------------------------------------------------------

    async def send(self, text: str, parent_id: str | None = None) -> Message | None:
        return await self._create(text, parent_id, EventKind.SEND_MESSAGE)

    async def reply(self, parent_id: str, text: str) -> Message | None:
        message = await self._create(text, parent_id, EventKind.REPLY_TO_MESSAGE)
        if message is not None:
            self.replying_to = None
        return message

    async def edit(self, key: str, new_text: str) -> bool:
        index = self._index_of(key)
        if index is None or not new_text or not new_text.strip():
            return False
        current = self._messages[index]
        if current.author_id != self.identity.id or current.is_deleted:
            return False

        updated = current.with_text(new_text.strip(), _now())
        self._replace(index, updated)
        await self._deliver(EventKind.EDIT_MESSAGE, updated, previous=current)
        return True

    async def delete(self, key: str) -> bool:
        index = self._index_of(key)
        if index is None:
            return False
        current = self._messages[index]
        if current.is_deleted or current.author_id != self.identity.id:
            return False

        if current.id is None:
            # Never reached the server (or still in flight): drop it everywhere.
            assert current.correlation_id is not None
            self._superseded.add(current.correlation_id)
            del self._messages[index]
            self._changed()
            await self._outbox.discard(current.correlation_id)
            return True

        tombstone = current.tombstone()
        self._replace(index, tombstone)
        await self._deliver(EventKind.DELETE_MESSAGE, tombstone, previous=current)
        return True

    async def toggle_reaction(self, key: str, symbol: str) -> bool:
        index = self._index_of(key)
        if index is None or not symbol:
            return False
        current = self._messages[index]
        if current.is_deleted:
            return False

        updated = current.with_reactions(toggle_reaction(current.reactions, symbol, self.identity.id))
        self._replace(index, updated)
        await self._deliver(EventKind.TOGGLE_REACTION, updated, reaction=symbol, previous=current)
        return True

    async def retry(self, correlation_id: str) -> bool:
        index = self._index_of(correlation_id)
        if index is None or self._messages[index].delivery_state != DeliveryState.FAILED:
            return False
        message = self._messages[index].with_state(DeliveryState.PENDING)
        self._replace(index, message)
        kind = EventKind.REPLY_TO_MESSAGE if message.parent_id else EventKind.SEND_MESSAGE
        await self._deliver(kind, message)
        return True

    async def _create(self, text: str, parent_id: str | None, kind: EventKind) -> Message | None:
        if not text or not text.strip():
            return None
        message = Message(
            id=None,
            correlation_id=new_correlation_id(),
            author_id=self.identity.id,
            author_name=self.identity.username,
            text=text.strip(),
            created_at=_now(),
            parent_id=parent_id,
            delivery_state=DeliveryState.PENDING,
        )
        self._messages.append(message)
        self._changed()
        await self._deliver(kind, message)
        assert message.correlation_id is not None
        return self.find(message.correlation_id)

    # -- delivery --------------------------------------------------------

    async def _deliver(
        self,
        kind: EventKind,
        message: Message,
        *,
        reaction: str | None = None,
        previous: Message | None = None,
    ) -> None:
        entry = OutboxEntry(
            entry_id=uuid.uuid4().hex,
            kind=kind,
            message=message,
            enqueued_at=_now(),
            reaction=reaction,
            previous=previous,
        )
        payload = self._payload_for(entry)
        if payload is None or not self._session.is_connected:
            await self._outbox.enqueue(entry)
            return
        if self._outbox.is_draining or await self._outbox.pending():
            # Queued operations are older than this one and must reach the server first.
            await self._outbox.enqueue(entry)
            self._schedule(self.flush_outbox())
            return

        try:
            ack = await self._session.request(kind, payload)
        except TransportError as exc:
            logger.info("Delivery of %s deferred to outbox: %s", kind, exc)
            await self._outbox.enqueue(entry)
            return
        self._apply_ack(entry, ack, previous)

    async def _dispatch_entry(self, entry: OutboxEntry) -> object:
        """Outbox drain callback; raises to pause the drain, returns DROP to discard."""
        if entry.kind in _CREATE_KINDS:
            local = self.find(entry.correlation_id or "")
            if local is None or local.is_confirmed:
                return DROP
        payload = self._payload_for(entry)
        if payload is None:
            payload = await self._await_target(entry)
        if payload is None:
            logger.info("Outbox %s for %s has no confirmed target", entry.kind, entry.correlation_id)
            return DROP

        ack = await self._session.request(entry.kind, payload)
        if not ack.ok and ack.retry_after:
            raise RateLimitError(entry.kind, ack.error or "", ack.retry_after)
        self._apply_ack(entry, ack, entry.previous)
        return ack

    async def _await_target(self, entry: OutboxEntry) -> Any | None:
        """Resolve the target of a mutation queued before its create was confirmed."""
        local = self.find(entry.correlation_id or "")
        if local is None or local.delivery_state != DeliveryState.PENDING:
            return None
        for queued in await self._outbox.pending():
            if queued.kind in _CREATE_KINDS and queued.correlation_id == entry.correlation_id:
                # The create was queued after this entry; send it out of turn.
                await self._dispatch_entry(queued)
                return self._payload_for(entry)
        raise TransportError(f"{entry.kind} waits for {entry.correlation_id} to be created")

    def _payload_for(self, entry: OutboxEntry) -> Any | None:
        message = entry.message
        if entry.kind == EventKind.SEND_MESSAGE:
            payload: dict[str, Any] = {"text": message.text, "correlationId": message.correlation_id}
            if message.parent_id:
                payload["parentId"] = message.parent_id
            return payload
        if entry.kind == EventKind.REPLY_TO_MESSAGE:
            return {"parentId": message.parent_id, "text": message.text, "correlationId": message.correlation_id}

        target = self._target_id(message)
        if target is None:
            return None
        if entry.kind == EventKind.EDIT_MESSAGE:
            return {"messageId": target, "newText": message.text}
        if entry.kind == EventKind.DELETE_MESSAGE:
            return target
        assert entry.reaction is not None
        voters = message.reactions.get(entry.reaction, frozenset())
        return {"messageId": target, "reaction": entry.reaction, "add": self.identity.id in voters}

    def _target_id(self, message: Message) -> str | None:
        if message.id:
            return message.id
        if message.correlation_id:
            local = self.find(message.correlation_id)
            if local is not None and local.id:
                return local.id
        return None

    def _apply_ack(self, entry: OutboxEntry, ack: Ack, previous: Message | None) -> None:
        if ack.ok and ack.message:
            canonical = message_from_wire(ack.message)
            if entry.kind in _CREATE_KINDS:
                self._reconcile_created(canonical)
            elif entry.kind == EventKind.TOGGLE_REACTION:
                self._reconcile_reaction(canonical)
            else:
                self._reconcile_replaced(canonical)
            return
        if ack.ok:
            return

        logger.info("%s rejected by server: %s", entry.kind, ack.error)
        if entry.kind in _CREATE_KINDS:
            index = self._index_of(entry.correlation_id or "")
            if index is not None:
                self._replace(index, self._messages[index].with_state(DeliveryState.FAILED))
        elif entry.kind == EventKind.DELETE_MESSAGE and ack.code == "not_found":
            logger.info("%s already gone on the server", entry.message.id)
        elif previous is not None:
            index = self._index_of(previous.identity)
            if index is not None:
                self._replace(index, _rolled_back(self._messages[index], previous, entry.kind))

    async def flush_outbox(self) -> int:
        return await self._outbox.drain(self._dispatch_entry, self._credential_provider)

    def _schedule(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _after_connect(self) -> None:
        await self.flush_outbox()
        await self.refresh()

    # -- history ---------------------------------------------------------

    async def refresh(self) -> None:
        if self._history is None:
            return
        try:
            raw, cursor = await self._history.fetch_page(self._page_size)
        except AppError as exc:
            logger.warning("Initial message fetch failed: %s", exc)
            return
        self.load_initial([message_from_wire(m) for m in raw])
        self._cursor = cursor
        self.has_more = cursor is not None

    async def load_more(self) -> bool:
        if self._history is None or not self.has_more:
            return False
        raw, cursor = await self._history.fetch_page(self._page_size, before=self._cursor)
        self._cursor = cursor
        self.has_more = cursor is not None
        self.prepend_older([message_from_wire(m) for m in raw])
        return True

    def load_initial(self, newest_first: list[Message]) -> None:
        confirmed = [m for m in reversed(newest_first) if m.correlation_id not in self._superseded]
        known = {m.correlation_id for m in confirmed if m.correlation_id}
        pending = [
            m for m in self._messages
            if not m.is_confirmed and m.correlation_id not in known
        ]
        self._messages = confirmed + pending
        self._changed()

    def prepend_older(self, newest_first: list[Message]) -> None:
        present = {m.id for m in self._messages if m.id}
        older = [m for m in reversed(newest_first) if m.id not in present]
        if older:
            self._messages = older + self._messages
            self._changed()

    # -- reconciliation --------------------------------------------------

    def _on_created(self, data: Any) -> None:
        self._reconcile_created(message_from_wire(data))

    def _on_replaced(self, data: Any) -> None:
        self._reconcile_replaced(message_from_wire(data))

    def _on_reaction(self, data: Any) -> None:
        self._reconcile_reaction(message_from_wire(data))

    def _reconcile_created(self, canonical: Message) -> None:
        cid = canonical.correlation_id
        if cid and cid in self._superseded:
            if cid not in self._purged:
                self._purged.add(cid)
                logger.info("Server created %s after local delete, deleting remotely", canonical.id)
                self._schedule(self._deliver(EventKind.DELETE_MESSAGE, canonical.tombstone()))
            return

        index = self._lookup(cid, canonical.id)
        if index is None:
            self._messages.append(canonical)
            self._changed()
            return

        local = self._messages[index]
        if local.is_confirmed:
            return
        self._replace(index, canonical)
        if self._session.is_connected:
            self._schedule(self.flush_outbox())

    def _reconcile_replaced(self, canonical: Message) -> None:
        if canonical.correlation_id in self._superseded:
            return
        index = self._lookup(canonical.correlation_id, canonical.id)
        if index is None:
            self._adopt_unknown(canonical)
            return
        self._replace(index, canonical)

    def _reconcile_reaction(self, canonical: Message) -> None:
        if canonical.correlation_id in self._superseded:
            return
        index = self._lookup(canonical.correlation_id, canonical.id)
        if index is None:
            self._adopt_unknown(canonical)
            return
        self._replace(index, self._messages[index].with_reactions(canonical.reactions))

    def _adopt_unknown(self, canonical: Message) -> None:
        conflict = ReconciliationConflict(f"No local entry for {canonical.id}")
        logger.warning("%s; treating as a fresh create", conflict.detail)
        self._messages.append(canonical)
        self._changed()

    def _lookup(self, correlation_id: str | None, message_id: str | None) -> int | None:
        if correlation_id:
            for i, m in enumerate(self._messages):
                if m.correlation_id == correlation_id:
                    return i
        if message_id:
            for i, m in enumerate(self._messages):
                if m.id == message_id:
                    return i
        return None

    def _index_of(self, key: str) -> int | None:
        if not key:
            return None
        return self._lookup(key, key)

    def _replace(self, index: int, message: Message) -> None:
        self._messages[index] = message
        self._changed()

    # -- notices ---------------------------------------------------------

    def _on_online_users(self, data: Any) -> None:
        self.online_users = list(data or [])

    def _on_rate_limit(self, data: Any) -> None:
        self._notice(NotificationType.RATE_LIMIT, data)

    def _on_error(self, data: Any) -> None:
        self._notice(NotificationType.ERROR, data)

    def _notice(self, kind: str, data: Any) -> None:
        payload = data if isinstance(data, dict) else {"message": str(data)}
        self.last_notice = (str(kind), payload)
        logger.info("Server notice %s: %s", kind, payload.get("message"))
        for listener in self._notice_listeners:
            listener(str(kind), payload)

    def _changed(self) -> None:
        for listener in self._change_listeners:
            listener()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _rolled_back(current: Message, previous: Message, kind: EventKind) -> Message:
    """Undo one rejected change while keeping whatever the server has stamped since."""
    if kind == EventKind.EDIT_MESSAGE:
        return replace(current, text=previous.text, edited_at=previous.edited_at)
    if kind == EventKind.DELETE_MESSAGE:
        return replace(current, is_deleted=previous.is_deleted)
    return current.with_reactions(previous.reactions)
