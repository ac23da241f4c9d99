from __future__ import annotations

import uuid
from typing import NewType

MessageId = NewType("MessageId", str)
CorrelationId = NewType("CorrelationId", str)
AuthorId = NewType("AuthorId", str)
SocketId = NewType("SocketId", str)


def new_message_id() -> MessageId:
    return MessageId(uuid.uuid4().hex)


def new_correlation_id() -> CorrelationId:
    return CorrelationId(str(uuid.uuid4()))


def new_socket_id() -> SocketId:
    return SocketId(uuid.uuid4().hex[:20])
