"""Redis-backed message store."""
from __future__ import annotations

import logging

import redis.asyncio as aioredis

from relay_chat.domain.entities.message import Message
from relay_chat.infrastructure.store._cursor import page_before, sort_key
from relay_chat.infrastructure.store._search import search_page
from relay_chat.infrastructure.store.serializer import deserialize_message, serialize_message

logger = logging.getLogger(__name__)


class RedisMessageStore:
    """Implements application.repositories.message.MessageStore.

    Layout: one JSON string per message, a list of ids in creation order,
    a list of reply ids per parent, and ``SET NX`` keys mapping
    ``(author_id, correlation_id)`` to the stamped id.
    """

    def __init__(self, redis: aioredis.Redis, prefix: str = "relay") -> None:
        self._redis = redis
        self._prefix = prefix

    def _msg_key(self, message_id: str) -> str:
        return f"{self._prefix}:msg:{message_id}"

    def _corr_key(self, author_id: str, correlation_id: str) -> str:
        return f"{self._prefix}:corr:{author_id}:{correlation_id}"

    def _replies_key(self, parent_id: str) -> str:
        return f"{self._prefix}:replies:{parent_id}"

    @property
    def _ids_key(self) -> str:
        return f"{self._prefix}:messages"

    async def get(self, message_id: str) -> Message | None:
        raw = await self._redis.get(self._msg_key(message_id))
        if raw is None:
            return None
        return deserialize_message(raw)

    async def put(self, message: Message) -> None:
        assert message.id is not None
        raw = serialize_message(message)
        created = await self._redis.set(self._msg_key(message.id), raw, nx=True)
        if not created:
            await self._redis.set(self._msg_key(message.id), raw)
            return
        await self._redis.rpush(self._ids_key, message.id)
        if message.parent_id:
            await self._redis.rpush(self._replies_key(message.parent_id), message.id)

    async def delete(self, message_id: str) -> None:
        message = await self.get(message_id)
        if message is None:
            return
        await self._redis.delete(self._msg_key(message_id))
        await self._redis.lrem(self._ids_key, 0, message_id)
        if message.parent_id:
            await self._redis.lrem(self._replies_key(message.parent_id), 0, message_id)
        if message.correlation_id:
            await self._redis.delete(self._corr_key(message.author_id, message.correlation_id))

    async def create_if_not_exists(self, message: Message) -> tuple[Message, bool]:
        assert message.id is not None
        if message.correlation_id:
            key = self._corr_key(message.author_id, message.correlation_id)
            claimed = await self._redis.set(key, message.id, nx=True)
            if not claimed:
                existing_id = await self._redis.get(key)
                existing = await self.get(existing_id) if existing_id else None
                if existing is not None:
                    return existing, False
                logger.warning("Dangling correlation key %s, overwriting", key)
                await self._redis.set(key, message.id)
        await self.put(message)
        return message, True

    async def _load_many(self, ids: list[str]) -> list[Message]:
        if not ids:
            return []
        raws = await self._redis.mget([self._msg_key(i) for i in ids])
        return [deserialize_message(raw) for raw in raws if raw is not None]

    async def list_page(self, page: int, limit: int) -> tuple[list[Message], int]:
        live = await self._live()
        newest_first = sorted(live, key=sort_key, reverse=True)
        start = page * limit
        return newest_first[start:start + limit], len(live)

    async def list_before(self, cursor: str | None, limit: int) -> tuple[list[Message], str | None]:
        return page_before(await self._live(), cursor, limit)

    async def search(self, query: str, page: int, limit: int) -> tuple[list[Message], int]:
        return search_page(await self._live(), query, page, limit)

    async def _live(self) -> list[Message]:
        ids = await self._redis.lrange(self._ids_key, 0, -1)
        return [m for m in await self._load_many(ids) if not m.is_deleted]

    async def list_replies(self, parent_id: str) -> list[Message]:
        ids = await self._redis.lrange(self._replies_key(parent_id), 0, -1)
        return [m for m in await self._load_many(ids) if not m.is_deleted]

    async def ping(self) -> bool:
        return bool(await self._redis.ping())
