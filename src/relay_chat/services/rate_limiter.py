"""Per-connection, per-event-kind admission control."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Mapping

from relay_chat.application.exceptions import RateLimitError
from relay_chat.application.ports.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

_MESSAGES = {
    "sendMessage": "Too many messages. Please slow down.",
    "toggleReaction": "Too many reaction requests. Please slow down.",
    "editMessage": "Too many edit requests. Please slow down.",
    "deleteMessage": "Too many delete requests. Please slow down.",
    "replyToMessage": "Too many reply requests. Please slow down.",
}


@dataclass
class RateLimitBucket:
    tokens: int
    window_started: float


class RateLimiter:
    """Token buckets keyed by ``(socket_id, event_kind)``.

    Each bucket holds ``capacity`` tokens and is refilled to capacity once
    its window has elapsed. Everything happens synchronously inside one call
    so two events on the same socket never interleave on a bucket.
    """

    def __init__(
        self,
        limits: Mapping[str, int],
        window_seconds: float = 60.0,
        clock: Clock | None = None,
    ) -> None:
        self._limits = dict(limits)
        self._window = window_seconds
        self._clock = clock or SystemClock()
        self._buckets: dict[str, dict[str, RateLimitBucket]] = {}

    def check(self, socket_id: str, event_kind: str, user_id: str | None = None) -> None:
        capacity = self._limits.get(event_kind)
        if capacity is None:
            return

        now = self._clock.monotonic()
        per_socket = self._buckets.setdefault(socket_id, {})
        bucket = per_socket.get(event_kind)
        if bucket is None or now - bucket.window_started >= self._window:
            bucket = RateLimitBucket(tokens=capacity, window_started=now)
            per_socket[event_kind] = bucket

        if bucket.tokens <= 0:
            retry_after = max(1, math.ceil(self._window - (now - bucket.window_started)))
            logger.warning(
                "Rate limit exceeded: socket=%s user=%s event=%s limit=%d window=%.0fs",
                socket_id, user_id, event_kind, capacity, self._window,
            )
            raise RateLimitError(
                event_kind,
                _MESSAGES.get(event_kind, "Too many requests. Please slow down."),
                retry_after,
            )

        bucket.tokens -= 1

    def remove(self, socket_id: str) -> None:
        if self._buckets.pop(socket_id, None) is not None:
            logger.debug("Rate limiter data cleaned for socket %s", socket_id)

    def cleanup(self) -> int:
        """Drop buckets whose window has expired. Returns the number dropped."""
        now = self._clock.monotonic()
        dropped = 0
        for socket_id in list(self._buckets):
            per_socket = self._buckets[socket_id]
            for kind in list(per_socket):
                if now - per_socket[kind].window_started >= self._window:
                    del per_socket[kind]
                    dropped += 1
            if not per_socket:
                del self._buckets[socket_id]
        if dropped:
            logger.debug("Rate limiter cleanup dropped %d buckets", dropped)
        return dropped

    def status(self, socket_id: str) -> dict[str, dict[str, int]]:
        now = self._clock.monotonic()
        result: dict[str, dict[str, int]] = {}
        for kind, bucket in self._buckets.get(socket_id, {}).items():
            capacity = self._limits[kind]
            expired = now - bucket.window_started >= self._window
            remaining = capacity if expired else bucket.tokens
            result[kind] = {"limit": capacity, "remaining": remaining, "count": capacity - remaining}
        return result

    def __contains__(self, socket_id: object) -> bool:
        return socket_id in self._buckets
