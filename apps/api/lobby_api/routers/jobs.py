"""Job triggers for an external scheduler. Every trigger answers 200 with the job's own payload."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from packages.lobby_core.clock import utc_now

from ..services.affinity_decay import run_affinity_decay
from ..services.conversation_sweep import sweep_conversation
from ..services.daily_reset import run_daily_reset
from ..services.heartbeat_scheduler import (
    SWEEP_WINDOW,
    SWEEP_WINDOW_MESSAGES,
    heartbeat_scheduler_status,
    run_heartbeat,
    start_heartbeat_scheduler,
    stop_heartbeat_scheduler,
)
from ..services.memory_guardian import build_life_chapter, run_memory_guardian
from ..services.memory_review import review_character_memories, run_memory_reviews
from ..services.relationship_consequences import process_relationship_events
from ..storage.dialogue import list_recent_messages


router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


class MemoryReviewRequest(BaseModel):
    character_name: Optional[str] = Field(default=None, max_length=64)


class SweepMessage(BaseModel):
    speaker: str = Field(min_length=1, max_length=64)
    content: str = Field(max_length=4000)


class ConversationSweepRequest(BaseModel):
    messages: Optional[list[SweepMessage]] = None
    channel: Optional[str] = Field(default=None, max_length=64)
    window_minutes: int = Field(default=60, ge=1, le=1440)


@router.post("/memory-review")
def post_memory_review(req: Optional[MemoryReviewRequest] = None) -> dict[str, Any]:
    if req is not None and req.character_name:
        return review_character_memories(req.character_name)
    return run_memory_reviews()


@router.post("/conversation-sweep")
def post_conversation_sweep(req: Optional[ConversationSweepRequest] = None) -> dict[str, Any]:
    if req is not None and req.messages is not None:
        window = [m.model_dump() for m in req.messages]
    else:
        minutes = req.window_minutes if req is not None else int(SWEEP_WINDOW.total_seconds() // 60)
        window = list_recent_messages(
            channel=req.channel if req is not None else None,
            since=utc_now() - timedelta(minutes=minutes),
            limit=SWEEP_WINDOW_MESSAGES,
        )
    return sweep_conversation(window)


@router.post("/relationship-consequences")
def post_relationship_consequences() -> dict[str, Any]:
    return process_relationship_events()


@router.post("/memory-guardian")
def post_memory_guardian(req: Optional[MemoryReviewRequest] = None) -> dict[str, Any]:
    if req is not None and req.character_name:
        return build_life_chapter(req.character_name)
    return run_memory_guardian()


@router.post("/affinity-decay")
def post_affinity_decay() -> dict[str, Any]:
    return run_affinity_decay()


@router.post("/daily-reset")
def post_daily_reset() -> dict[str, Any]:
    return run_daily_reset()


@router.post("/heartbeat")
def post_heartbeat() -> dict[str, Any]:
    return run_heartbeat()


@router.get("/heartbeat/status")
def get_heartbeat_status() -> dict[str, Any]:
    return {"scheduler": heartbeat_scheduler_status()}


@router.post("/heartbeat/start")
def post_heartbeat_start() -> dict[str, Any]:
    started = start_heartbeat_scheduler()
    return {"ok": True, "started": started, "scheduler": heartbeat_scheduler_status()}


@router.post("/heartbeat/stop")
def post_heartbeat_stop() -> dict[str, Any]:
    stopped = stop_heartbeat_scheduler()
    return {"ok": True, "stopped": stopped, "scheduler": heartbeat_scheduler_status()}
