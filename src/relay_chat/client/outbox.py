"""Offline outbox: operations generated while disconnected, replayed in order."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable

from relay_chat.application.exceptions import RateLimitError, TransportError
from relay_chat.application.repositories.outbox import OutboxEntry, OutboxStore

logger = logging.getLogger(__name__)

DROP = object()
"""Returned by a dispatch callback when the entry can no longer be sent."""

DispatchCallback = Callable[[OutboxEntry], Awaitable[object]]
CredentialProvider = Callable[[], str | None]


class InMemoryOutboxStore:
    """Implements OutboxStore for ephemeral clients and tests."""

    def __init__(self) -> None:
        self._entries: list[OutboxEntry] = []

    async def add(self, entry: OutboxEntry) -> None:
        self._entries.append(entry)

    async def list_pending(self) -> list[OutboxEntry]:
        return sorted(self._entries, key=lambda e: e.enqueued_at)

    async def remove(self, entry_id: str) -> None:
        self._entries = [e for e in self._entries if e.entry_id != entry_id]

    async def remove_for_correlation(self, correlation_id: str) -> int:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.correlation_id != correlation_id]
        return before - len(self._entries)

    async def mark_attempt(self, entry_id: str) -> None:
        self._entries = [e.bump() if e.entry_id == entry_id else e for e in self._entries]


class OfflineOutbox:
    def __init__(self, store: OutboxStore) -> None:
        self._store = store
        self._draining = False

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def enqueue(self, entry: OutboxEntry) -> None:
        """Best-effort durable write; never raises."""
        try:
            await self._store.add(entry)
            logger.info("Queued %s for %s while offline", entry.kind, entry.correlation_id)
        except Exception:
            logger.exception("Failed to persist outbox entry %s", entry.entry_id)

    async def pending(self) -> list[OutboxEntry]:
        return await self._store.list_pending()

    async def discard(self, correlation_id: str) -> int:
        """Drop every entry carrying this message (superseded before delivery)."""
        removed = await self._store.remove_for_correlation(correlation_id)
        if removed:
            logger.info("Discarded %d outbox entries for %s", removed, correlation_id)
        return removed

    async def drain(self, dispatch: DispatchCallback, credential_provider: CredentialProvider) -> int:
        """Replay queued entries in order; return how many the server acknowledged.

        An entry leaves the queue only after ``dispatch`` returns. A drain
        already in progress makes this call a no-op. Cancelling the draining
        task leaves the in-flight entry queued for the next drain.
        """
        if self._draining:
            return 0
        if not credential_provider():
            logger.info("Outbox drain skipped: no credential available")
            return 0

        self._draining = True
        delivered = 0
        try:
            while entries := await self._store.list_pending():
                entry = entries[0]
                try:
                    result = await dispatch(entry)
                except (TransportError, RateLimitError) as exc:
                    logger.warning("Outbox drain paused at %s: %s", entry.entry_id, exc)
                    await self._store.mark_attempt(entry.entry_id)
                    break
                await self._store.remove(entry.entry_id)
                if result is DROP:
                    logger.info("Dropped unsendable outbox entry %s (%s)", entry.entry_id, entry.kind)
                else:
                    delivered += 1
        finally:
            self._draining = False

        if delivered:
            logger.info("Sent %d message%s from offline queue", delivered, "" if delivered == 1 else "s")
        return delivered
