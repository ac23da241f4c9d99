from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from relay_chat.application.dto.principal import Principal


@dataclass(frozen=True, slots=True)
class ConnectionSession:
    socket_id: str
    identity: Principal
    connected_at: datetime
