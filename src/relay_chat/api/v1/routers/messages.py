from __future__ import annotations

import math

from fastapi import APIRouter, HTTPException, Query

from relay_chat.api.deps import CurrentPrincipal, StoreDep
from relay_chat.api.v1.schemas.message import MessagePageResponse, PaginationResponse
from relay_chat.application.exceptions import NotFoundError
from relay_chat.infrastructure.store._cursor import encode_cursor, sort_key
from relay_chat.infrastructure.ws.protocol import message_to_wire

router = APIRouter(prefix="/api/messages", tags=["messages"])


@router.get("", response_model=MessagePageResponse)
async def list_messages(
    _principal: CurrentPrincipal,
    store: StoreDep,
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    before: str | None = Query(None),
) -> MessagePageResponse:
    if before is not None:
        messages, next_cursor = await store.list_before(before, limit)
        return MessagePageResponse(
            messages=[message_to_wire(m) for m in messages],
            pagination=PaginationResponse(limit=limit, next_cursor=next_cursor),
        )

    messages, total = await store.list_page(page, limit)
    next_cursor = None
    if messages and (page + 1) * limit < total:
        next_cursor = encode_cursor(*sort_key(messages[-1]))
    return MessagePageResponse(
        messages=[message_to_wire(m) for m in messages],
        pagination=PaginationResponse(
            total_messages=total,
            total_pages=max(1, math.ceil(total / limit)),
            current_page=page,
            limit=limit,
            next_cursor=next_cursor,
        ),
    )


@router.get("/search", response_model=MessagePageResponse)
async def search_messages(
    _principal: CurrentPrincipal,
    store: StoreDep,
    query: str = Query(""),
    page: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
) -> MessagePageResponse:
    if not query.strip():
        raise HTTPException(status_code=400, detail="Search query is required")
    messages, total = await store.search(query.strip(), page, limit)
    return MessagePageResponse(
        messages=[message_to_wire(m) for m in messages],
        pagination=PaginationResponse(
            total_messages=total,
            total_pages=max(1, math.ceil(total / limit)),
            current_page=page,
            limit=limit,
        ),
    )


@router.get("/{message_id}/replies")
async def list_replies(
    message_id: str,
    _principal: CurrentPrincipal,
    store: StoreDep,
) -> list[dict]:
    if await store.get(message_id) is None:
        raise NotFoundError(f"Message not found: {message_id}")
    return [message_to_wire(m) for m in await store.list_replies(message_id)]
