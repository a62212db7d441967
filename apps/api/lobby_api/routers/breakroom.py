"""Break room endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from packages.lobby_core.vitals.activities import ActivityCooldownError, UnknownActivityError

from ..services.breakroom import (
    CharacterNotFoundError,
    MissingTargetError,
    breakroom_overview,
    perform_activity,
)


router = APIRouter(prefix="/api/v1/breakroom", tags=["breakroom"])


class ActivityRequest(BaseModel):
    character_name: str = Field(min_length=1, max_length=64)
    action: str = Field(min_length=1, max_length=64)
    target_name: Optional[str] = Field(default=None, max_length=64)


@router.get("")
@router.get("/")
def get_breakroom() -> dict[str, Any]:
    return breakroom_overview()


@router.post("/activities")
def post_activity(req: ActivityRequest) -> Any:
    try:
        result = perform_activity(
            character_name=req.character_name,
            action=req.action,
            target_name=req.target_name,
        )
    except UnknownActivityError as exc:
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc), "available": exc.available},
        )
    except CharacterNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except MissingTargetError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ActivityCooldownError as exc:
        return JSONResponse(
            status_code=429,
            content={
                "detail": str(exc),
                "cooldown_remaining_ms": exc.remaining_ms,
                "cooldown_display": exc.display,
            },
            headers={"Retry-After": str(max(1, -(-exc.remaining_ms // 1000)))},
        )
    return {"ok": True, **result}
