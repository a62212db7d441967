"""Break room recovery activities behind the shared per-character cooldown."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
import logging

from packages.lobby_core.clock import iso_utc, utc_now
from packages.lobby_core.vitals.activities import (
    ACTIVITIES,
    BREAK_ROOM_MEMORY_IMPORTANCE,
    BREAK_ROOM_MEMORY_TTL,
    BREAK_ROOM_MEMORY_TYPE,
    DEFAULT_FOCUS,
    ActivityCooldownError,
    apply_deltas,
    break_room_memory_content,
    categorize_states,
    cooldown_remaining_ms,
    get_activity,
)

from ..storage.character_state import get_state, human_characters, list_states, update_state
from ..storage.memories import create_memory


logger = logging.getLogger("lobby_api.breakroom")


class CharacterNotFoundError(LookupError):
    def __init__(self, character_name: str) -> None:
        super().__init__(f"Character not found: {character_name}")
        self.character_name = character_name


class MissingTargetError(ValueError):
    pass


def _is_human(state: dict[str, Any]) -> bool:
    return bool(state.get("is_human")) or state.get("character_name") in human_characters()


def breakroom_overview() -> dict[str, Any]:
    states = list_states()
    groups = categorize_states(states)
    return {
        "characters": states,
        "exhausted": [s["character_name"] for s in groups["exhausted"]],
        "done": [s["character_name"] for s in groups["done"]],
        "needs_break": [s["character_name"] for s in groups["needs_break"]],
        "in_break_room": [s["character_name"] for s in groups["in_break_room"]],
        "activities": sorted(ACTIVITIES),
    }


def perform_activity(
    *,
    character_name: str,
    action: str,
    target_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Apply one recovery activity.

    Raises UnknownActivityError, CharacterNotFoundError, MissingTargetError or
    ActivityCooldownError; nothing is written when any of them is raised.
    """
    current = now or utc_now()
    activity = get_activity(action)
    state = get_state(character_name=character_name)
    if state is None:
        raise CharacterNotFoundError(character_name)

    target_state = None
    if activity.affects_target:
        target = str(target_name or "").strip()
        if not target:
            raise MissingTargetError(f"Activity '{activity.key}' requires a target")
        if target == character_name:
            raise MissingTargetError("An activity cannot target the acting character")
        target_state = get_state(character_name=target)
        if target_state is None:
            raise MissingTargetError(f"Target not found: {target}")

    remaining_ms = cooldown_remaining_ms(state.get("last_activity_at"), current)
    if remaining_ms > 0:
        raise ActivityCooldownError(character_name, remaining_ms)

    energy, patience = apply_deltas(state, energy=activity.energy, patience=activity.patience)
    activity_log = dict(state.get("activity_log") or {})
    activity_log[activity.key] = iso_utc(current)
    changes: dict[str, Any] = {
        "energy": energy,
        "patience": patience,
        "mood": activity.mood,
        "last_activity_at": current,
        "activity_log": activity_log,
    }
    if not _is_human(state):
        changes["current_focus"] = DEFAULT_FOCUS
    updated = update_state(character_name=character_name, changes=changes, now=current)

    updated_target = None
    if target_state is not None and activity.target_bonus is not None:
        bonus_energy, bonus_patience, bonus_mood = activity.target_bonus
        target_energy, target_patience = apply_deltas(target_state, energy=bonus_energy, patience=bonus_patience)
        updated_target = update_state(
            character_name=target_state["character_name"],
            changes={"energy": target_energy, "patience": target_patience, "mood": bonus_mood},
            now=current,
        )

    target_label = target_state["character_name"] if target_state else None
    try:
        create_memory(
            character_name=character_name,
            content=break_room_memory_content(activity, target_label),
            memory_type=BREAK_ROOM_MEMORY_TYPE,
            importance=BREAK_ROOM_MEMORY_IMPORTANCE,
            related_characters=[target_label] if target_label else [],
            expires_at=current + BREAK_ROOM_MEMORY_TTL,
            now=current,
        )
    except Exception as exc:
        logger.warning("[BREAKROOM] Failed to record memory for %s: %s", character_name, exc)

    logger.info("[BREAKROOM] %s %s", character_name, activity.describe(target_label))
    return {
        "character": updated,
        "target": updated_target,
        "activity": activity.key,
        "message": activity.describe(target_label),
    }
