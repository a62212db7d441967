"""Dialogue message log endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from ..storage.dialogue import DEFAULT_CHANNEL, append_message, list_recent_messages


router = APIRouter(prefix="/api/v1/dialogue", tags=["dialogue"])


class MessageRequest(BaseModel):
    speaker: str = Field(min_length=1, max_length=64)
    content: str = Field(min_length=1, max_length=4000)
    channel: str = Field(default=DEFAULT_CHANNEL, min_length=1, max_length=64)


@router.post("/messages")
def post_message(req: MessageRequest) -> dict[str, Any]:
    return {"ok": True, "message": append_message(speaker=req.speaker, content=req.content, channel=req.channel)}


@router.get("/messages")
def get_messages(
    channel: Optional[str] = Query(default=None),
    limit: int = Query(default=30, ge=1, le=500),
) -> dict[str, Any]:
    rows = list_recent_messages(channel=channel, limit=limit)
    return {"count": len(rows), "messages": rows}
