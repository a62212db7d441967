"""Relationship ledger and interaction event endpoints."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from packages.lobby_core.social.affinity import describe_affinity

from ..services.interactions import record_interaction
from ..storage.relationships import list_events, list_relationships

logger = logging.getLogger("lobby_api.relationships")


router = APIRouter(prefix="/api/v1/relationships", tags=["relationships"])


class InteractionRequest(BaseModel):
    character_name: str = Field(min_length=1, max_length=64)
    target_name: str = Field(min_length=1, max_length=64)
    delta: int = Field(ge=-100, le=100)
    event_type: str = Field(default="interaction", min_length=1, max_length=64)
    context: str = Field(default="", max_length=1000)


@router.post("/interactions")
def post_interaction(req: InteractionRequest) -> dict[str, Any]:
    try:
        result = record_interaction(
            character_name=req.character_name,
            target_name=req.target_name,
            delta=req.delta,
            event_type=req.event_type,
            context=req.context,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, **result}


@router.get("/events")
def get_events(
    character_name: Optional[str] = Query(default=None),
    processed: Optional[bool] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
) -> dict[str, Any]:
    rows = list_events(character_name=character_name, processed=processed, limit=limit)
    return {"count": len(rows), "events": rows}


@router.get("/characters/{character_name}")
def get_relationships(character_name: str) -> dict[str, Any]:
    rows = [
        {**row, "descriptor": describe_affinity(int(row["affinity"]))}
        for row in list_relationships(character_name=character_name)
    ]
    return {"character": character_name, "count": len(rows), "relationships": rows}
