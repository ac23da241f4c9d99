from __future__ import annotations

import logging

from relay_chat.application.dto.principal import Principal
from relay_chat.application.dto.session import ConnectionSession

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Live connection sessions keyed by socket id.

    One identity may hold several sockets (tabs); it stays online while any
    of them is registered.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ConnectionSession] = {}

    def admit(self, session: ConnectionSession) -> None:
        self._sessions[session.socket_id] = session
        logger.info(
            "User connected: %s (socket=%s, sockets=%d)",
            session.identity.username, session.socket_id, len(self._sessions),
        )

    def remove(self, socket_id: str) -> ConnectionSession | None:
        session = self._sessions.pop(socket_id, None)
        if session is None:
            logger.warning("Unknown socket disconnected: %s", socket_id)
        else:
            logger.info(
                "User disconnected: %s (socket=%s, sockets=%d)",
                session.identity.username, socket_id, len(self._sessions),
            )
        return session

    def get(self, socket_id: str) -> ConnectionSession | None:
        return self._sessions.get(socket_id)

    def sessions_for(self, user_id: str) -> list[ConnectionSession]:
        return [s for s in self._sessions.values() if s.identity.id == user_id]

    def is_online(self, user_id: str) -> bool:
        return any(s.identity.id == user_id for s in self._sessions.values())

    def online_users(self) -> list[Principal]:
        seen: dict[str, Principal] = {}
        for session in self._sessions.values():
            seen.setdefault(session.identity.id, session.identity)
        return list(seen.values())

    def socket_ids(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, socket_id: object) -> bool:
        return socket_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
