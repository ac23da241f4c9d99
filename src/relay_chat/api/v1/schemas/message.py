from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class PaginationResponse(BaseModel):
    """Page metadata; totals are omitted when the page was addressed by cursor."""

    total_messages: int | None = None
    total_pages: int | None = None
    current_page: int | None = None
    limit: int
    next_cursor: str | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessagePageResponse(BaseModel):
    messages: list[dict[str, Any]]
    pagination: PaginationResponse
