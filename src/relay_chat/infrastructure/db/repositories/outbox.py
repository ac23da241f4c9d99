from __future__ import annotations

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay_chat.application.repositories.outbox import OutboxEntry
from relay_chat.infrastructure.db.mappers.outbox import entity_to_model, model_to_entity
from relay_chat.infrastructure.db.models.outbox import OutboxEntryModel


class SqlAlchemyOutboxStore:
    """Implements OutboxStore on a local SQLite file; one transaction per call."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def add(self, entry: OutboxEntry) -> None:
        async with self._sessionmaker() as session, session.begin():
            session.add(entity_to_model(entry))

    async def list_pending(self) -> list[OutboxEntry]:
        stmt = select(OutboxEntryModel).order_by(
            OutboxEntryModel.enqueued_at.asc(), OutboxEntryModel.id.asc(),
        )
        async with self._sessionmaker() as session:
            result = await session.execute(stmt)
            return [model_to_entity(m) for m in result.scalars().all()]

    async def remove(self, entry_id: str) -> None:
        async with self._sessionmaker() as session, session.begin():
            await session.execute(
                delete(OutboxEntryModel).where(OutboxEntryModel.entry_id == entry_id)
            )

    async def remove_for_correlation(self, correlation_id: str) -> int:
        async with self._sessionmaker() as session, session.begin():
            result = await session.execute(
                delete(OutboxEntryModel).where(OutboxEntryModel.correlation_id == correlation_id)
            )
            return result.rowcount or 0

    async def mark_attempt(self, entry_id: str) -> None:
        async with self._sessionmaker() as session, session.begin():
            await session.execute(
                update(OutboxEntryModel)
                .where(OutboxEntryModel.entry_id == entry_id)
                .values(attempts=OutboxEntryModel.attempts + 1)
            )
