"""Once-daily restoration of vitals plus coarse memory and want cleanup."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional
import logging

from packages.lobby_core.clock import utc_now
from packages.lobby_core.memory.lifecycle import (
    IMPORTANCE_DECAY_RULES,
    LOW_VALUE_IMPORTANCE,
    LOW_VALUE_MAX_AGE,
)
from packages.lobby_core.vitals.activities import daily_restore

from ..storage.character_state import list_states, update_state
from ..storage.goals import expire_stale_wants
from ..storage.memories import decay_importance, delete_low_value_memories


logger = logging.getLogger("lobby_api.daily_reset")
WANT_MAX_AGE = timedelta(hours=24)


def run_daily_reset(*, now: Optional[datetime] = None) -> dict[str, Any]:
    current = now or utc_now()
    summary: dict[str, Any] = {
        "ok": True,
        "characters_restored": 0,
        "restore_failures": 0,
        "wants_expired": 0,
        "memories_decayed": 0,
        "memories_deleted": 0,
    }
    try:
        for state in list_states():
            try:
                update_state(
                    character_name=state["character_name"],
                    changes=daily_restore(state),
                    now=current,
                )
                summary["characters_restored"] += 1
            except Exception as exc:
                summary["restore_failures"] += 1
                logger.warning("[DAILY-RESET] Failed to restore %s: %s", state.get("character_name"), exc)

        try:
            summary["wants_expired"] = expire_stale_wants(created_before=current - WANT_MAX_AGE, now=current)
        except Exception as exc:
            logger.warning("[DAILY-RESET] Failed to expire stale wants: %s", exc)

        for lowest, highest, age, new_importance in IMPORTANCE_DECAY_RULES:
            try:
                summary["memories_decayed"] += decay_importance(
                    lowest=lowest,
                    highest=highest,
                    created_before=current - age,
                    new_importance=new_importance,
                )
            except Exception as exc:
                logger.warning("[DAILY-RESET] Importance decay %d-%d failed: %s", lowest, highest, exc)

        try:
            summary["memories_deleted"] = delete_low_value_memories(
                below_importance=LOW_VALUE_IMPORTANCE,
                created_before=current - LOW_VALUE_MAX_AGE,
            )
        except Exception as exc:
            logger.warning("[DAILY-RESET] Low-value cleanup failed: %s", exc)
    except Exception as exc:
        logger.exception("[DAILY-RESET] Reset failed: %s", exc)
        summary["ok"] = False
        summary["reason"] = "error"
        summary["error"] = f"{exc.__class__.__name__}: {exc}"
        return summary

    logger.info(
        "[DAILY-RESET] Restored %d characters, expired %d wants, decayed %d and deleted %d memories",
        summary["characters_restored"],
        summary["wants_expired"],
        summary["memories_decayed"],
        summary["memories_deleted"],
    )
    return summary
