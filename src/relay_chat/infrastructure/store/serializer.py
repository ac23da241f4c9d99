from __future__ import annotations

import json

from relay_chat.domain.entities.message import Message
from relay_chat.infrastructure.ws.protocol import message_from_wire, message_to_wire


def serialize_message(message: Message) -> str:
    return json.dumps(message_to_wire(message))


def deserialize_message(raw: str | bytes) -> Message:
    return message_from_wire(json.loads(raw))
