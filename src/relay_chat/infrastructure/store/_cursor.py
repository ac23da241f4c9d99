"""Cursor-based pagination helpers.

Cursor format: base64("<iso-timestamp>|<message id>"), padding stripped.
Messages are ordered by ``(created_at, id)``; a cursor names the oldest
message a page returned and the next page starts strictly before it.
"""
from __future__ import annotations

import base64
from datetime import datetime

from relay_chat.application.exceptions import ValidationError
from relay_chat.domain.entities.message import Message

CursorKey = tuple[datetime, str]


def sort_key(message: Message) -> CursorKey:
    return message.created_at, message.id or ""


def encode_cursor(ts: datetime, message_id: str) -> str:
    raw = f"{ts.isoformat()}|{message_id}"
    cursor = base64.urlsafe_b64encode(raw.encode()).decode()
    return cursor.rstrip("=")


def decode_cursor(cursor: str) -> CursorKey:
    cursor += "=" * ((4 - len(cursor) % 4) % 4)
    try:
        raw = base64.urlsafe_b64decode(cursor.encode()).decode()
        ts_str, message_id = raw.split("|", 1)
        ts = datetime.fromisoformat(ts_str)
    except ValueError as exc:
        raise ValidationError("Invalid pagination cursor") from exc
    if ts.tzinfo is None:
        raise ValidationError("Invalid pagination cursor")
    return ts, message_id


def page_before(
    live: list[Message], cursor: str | None, limit: int,
) -> tuple[list[Message], str | None]:
    """Newest-first slice of ``live`` older than ``cursor`` plus the cursor after it."""
    ordered = sorted(live, key=sort_key, reverse=True)
    if cursor:
        bound = decode_cursor(cursor)
        ordered = [m for m in ordered if sort_key(m) < bound]
    page = ordered[:limit]
    if len(ordered) <= limit or not page:
        return page, None
    oldest = page[-1]
    return page, encode_cursor(*sort_key(oldest))
