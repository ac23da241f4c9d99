from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from relay_chat.domain.value_objects.enums import NotificationType


@dataclass(frozen=True, slots=True)
class Notification:
    """Outbound event produced by the pipeline.

    ``audience`` is ``"all"`` for broadcasts and ``"origin"`` for replies
    addressed to the connection that sent the command.
    """

    type: NotificationType
    data: Any
    audience: Literal["all", "origin"] = "all"
