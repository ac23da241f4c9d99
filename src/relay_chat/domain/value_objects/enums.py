from __future__ import annotations

from enum import StrEnum


class DeliveryState(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class EventKind(StrEnum):
    """Client → server mutation events."""

    SEND_MESSAGE = "sendMessage"
    EDIT_MESSAGE = "editMessage"
    DELETE_MESSAGE = "deleteMessage"
    TOGGLE_REACTION = "toggleReaction"
    REPLY_TO_MESSAGE = "replyToMessage"


class NotificationType(StrEnum):
    """Server → client events."""

    CONNECTED = "connected"
    CONNECT_ERROR = "connect_error"
    MESSAGE_CREATED = "sendMessage"
    MESSAGE_EDITED = "editMessage"
    MESSAGE_DELETED = "deleteMessage"
    REACTION_UPDATED = "toggleReaction"
    REPLY_CREATED = "replyCreated"
    ONLINE_USERS = "onlineUsers"
    RATE_LIMIT = "rateLimit"
    ERROR = "error"
    ACK = "ack"
    PONG = "pong"


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
