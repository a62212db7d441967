"""Evaluation control-plane endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from packages.lobby_core.llm.policy import normalize_policy_row

from ..storage.llm_control import get_llm_policy, list_call_logs, list_llm_policies, upsert_llm_policy


router = APIRouter(prefix="/api/v1/llm", tags=["llm"])


class UpsertPolicyRequest(BaseModel):
    model_tier: str = Field(pattern="^(strong|fast|cheap)$")
    max_input_tokens: int = Field(ge=1, le=200000)
    max_output_tokens: int = Field(ge=1, le=64000)
    temperature: float = Field(ge=0.0, le=2.0)
    timeout_ms: int = Field(ge=100, le=120000)


@router.get("/policies")
def get_policies() -> dict:
    policies = [p.as_dict() for p in list_llm_policies()]
    return {"count": len(policies), "policies": policies}


@router.get("/policies/{task_name}")
def get_policy_by_task(task_name: str) -> dict:
    policy = get_llm_policy(task_name)
    return {"task_name": task_name, "policy": policy.as_dict()}


@router.put("/policies/{task_name}")
def put_policy(task_name: str, req: UpsertPolicyRequest) -> dict:
    normalized = normalize_policy_row(task_name, req.model_dump())
    saved = upsert_llm_policy(normalized)
    return {"ok": True, "policy": saved.as_dict()}


@router.get("/logs")
def get_logs(
    limit: int = Query(default=50, ge=1, le=500),
    task_name: Optional[str] = Query(default=None),
    character_name: Optional[str] = Query(default=None),
) -> dict:
    rows = list_call_logs(limit=limit, task_name=task_name, character_name=character_name)
    return {"count": len(rows), "logs": rows}
