"""Character read surface plus memory, vitals and goal endpoints."""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from ..services.character_context import character_context
from ..services.interactions import adjust_character_state
from ..storage.character_state import get_state, list_states, update_state
from ..storage.goals import (
    complete_goal,
    create_goal,
    fail_goal,
    get_goal,
    list_goals,
    update_progress,
)
from ..storage.memories import create_memory, list_active_memories, pin_memory

logger = logging.getLogger("lobby_api.characters")


router = APIRouter(prefix="/api/v1", tags=["characters"])


class CreateMemoryRequest(BaseModel):
    content: str = Field(min_length=1, max_length=4000)
    memory_type: str = Field(default="observation", min_length=1, max_length=64)
    importance: int = Field(default=5, ge=1, le=10)
    tier: str = Field(default="working", pattern="^(working|core)$")
    emotional_tags: list[str] = Field(default_factory=list)
    related_characters: list[str] = Field(default_factory=list)


class StateAdjustRequest(BaseModel):
    energy_delta: int = 0
    patience_delta: int = 0
    mood: Optional[str] = Field(default=None, max_length=64)
    current_focus: Optional[str] = Field(default=None, max_length=64)
    is_human: Optional[bool] = None
    count_interaction: bool = False


class CreateGoalRequest(BaseModel):
    goal_text: str = Field(min_length=1, max_length=500)
    goal_type: str = Field(default="goal", pattern="^(goal|want)$")
    scope: Optional[str] = Field(default=None, max_length=128)
    priority: Optional[int] = Field(default=None, ge=0, le=10)


class ProgressRequest(BaseModel):
    progress: int


class FailGoalRequest(BaseModel):
    reason: str = Field(default="abandoned", min_length=1, max_length=200)


def _require_goal(goal_id: str) -> dict[str, Any]:
    goal = get_goal(goal_id=goal_id)
    if goal is None:
        raise HTTPException(status_code=404, detail=f"Goal not found: {goal_id}")
    return goal


@router.get("/characters")
def list_characters() -> dict[str, Any]:
    states = list_states()
    return {"count": len(states), "characters": states}


@router.get("/characters/{character_name}/context")
def get_character_context(character_name: str, memory_limit: int = Query(default=30, ge=1, le=200)) -> dict[str, Any]:
    return character_context(character_name, memory_limit=memory_limit)


@router.get("/characters/{character_name}/memories")
def get_memories(character_name: str, limit: int = Query(default=50, ge=1, le=500)) -> dict[str, Any]:
    rows = list_active_memories(character_name=character_name, limit=limit)
    return {"count": len(rows), "memories": rows}


@router.post("/characters/{character_name}/memories")
def post_memory(character_name: str, req: CreateMemoryRequest) -> dict[str, Any]:
    memory = create_memory(
        character_name=character_name,
        content=req.content,
        memory_type=req.memory_type,
        importance=req.importance,
        tier=req.tier,
        emotional_tags=req.emotional_tags,
        related_characters=req.related_characters,
    )
    logger.info("[MEMORY] Stored %s memory for %s", memory["memory_type"], character_name)
    return {"ok": True, "memory": memory}


@router.post("/memories/{memory_id}/pin")
def post_pin_memory(memory_id: str) -> dict[str, Any]:
    memory = pin_memory(memory_id=memory_id)
    if memory is None:
        raise HTTPException(status_code=404, detail=f"Memory not found: {memory_id}")
    return {"ok": True, "memory": memory}


@router.get("/characters/{character_name}/state")
def get_character_state(character_name: str) -> dict[str, Any]:
    state = get_state(character_name=character_name)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Character not found: {character_name}")
    return {"state": state}


@router.put("/characters/{character_name}/state")
def put_character_state(character_name: str, req: StateAdjustRequest) -> dict[str, Any]:
    state = adjust_character_state(
        character_name=character_name,
        energy_delta=req.energy_delta,
        patience_delta=req.patience_delta,
        mood=req.mood,
        current_focus=req.current_focus,
        count_interaction=req.count_interaction,
    )
    if req.is_human is not None:
        state = update_state(character_name=character_name, changes={"is_human": req.is_human}) or state
    return {"ok": True, "state": state}


@router.get("/characters/{character_name}/goals")
def get_goals(
    character_name: str,
    active_only: bool = Query(default=True),
    goal_type: Optional[str] = Query(default=None, pattern="^(goal|want)$"),
) -> dict[str, Any]:
    rows = list_goals(character_name=character_name, active_only=active_only, goal_type=goal_type)
    return {"count": len(rows), "goals": rows}


@router.post("/characters/{character_name}/goals")
def post_goal(character_name: str, req: CreateGoalRequest) -> dict[str, Any]:
    goal = create_goal(
        character_name=character_name,
        goal_text=req.goal_text,
        goal_type=req.goal_type,
        scope=req.scope,
        priority=req.priority,
    )
    return {"ok": True, "goal": goal}


@router.post("/goals/{goal_id}/progress")
def post_goal_progress(goal_id: str, req: ProgressRequest) -> dict[str, Any]:
    _require_goal(goal_id)
    return {"ok": True, "goal": update_progress(goal_id=goal_id, progress=req.progress)}


@router.post("/goals/{goal_id}/complete")
def post_goal_complete(goal_id: str) -> dict[str, Any]:
    _require_goal(goal_id)
    return {"ok": True, "goal": complete_goal(goal_id=goal_id)}


@router.post("/goals/{goal_id}/fail")
def post_goal_fail(goal_id: str, req: FailGoalRequest) -> dict[str, Any]:
    _require_goal(goal_id)
    return {"ok": True, "goal": fail_goal(goal_id=goal_id, reason=req.reason)}
