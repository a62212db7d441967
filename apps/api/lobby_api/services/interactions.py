"""Write surfaces used by chat and activity handlers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
import logging

from packages.lobby_core.clock import utc_now
from packages.lobby_core.social.affinity import apply_interaction, cap_interaction_delta
from packages.lobby_core.social.events import RAW_INTERACTION
from packages.lobby_core.vitals.activities import apply_deltas

from ..storage.character_state import ensure_state, update_state
from ..storage.relationships import append_event, get_relationship, update_affinity


logger = logging.getLogger("lobby_api.interactions")


def record_interaction(
    *,
    character_name: str,
    target_name: str,
    delta: int,
    event_type: str = "interaction",
    context: str = "",
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Move affinity for an existing ledger row and always log one raw event.

    Ledger rows are never created here.
    """
    source = str(character_name or "").strip()
    target = str(target_name or "").strip()
    if not source or not target:
        raise ValueError("character_name and target_name are required")
    if source == target:
        raise ValueError("A character cannot interact with itself")
    current = now or utc_now()

    relationship = get_relationship(character_name=source, target_name=target)
    applied = cap_interaction_delta(delta)
    if relationship is not None:
        affinity, label, applied = apply_interaction(
            affinity=int(relationship["affinity"]),
            label=relationship.get("relationship_label"),
            delta=delta,
        )
        relationship = update_affinity(
            character_name=source,
            target_name=target,
            affinity=affinity,
            label=label,
            now=current,
        )

    event = append_event(
        character_name=source,
        target_name=target,
        event_type=str(event_type or "interaction").strip(),
        intensity=abs(applied),
        affinity_delta=applied,
        context=str(context or ""),
        origin=RAW_INTERACTION,
        now=current,
    )
    logger.debug("Recorded %s from %s to %s (delta=%d)", event["event_type"], source, target, applied)
    return {"relationship": relationship, "event": event, "applied_delta": applied}


def adjust_character_state(
    *,
    character_name: str,
    energy_delta: int = 0,
    patience_delta: int = 0,
    mood: Optional[str] = None,
    current_focus: Optional[str] = None,
    count_interaction: bool = False,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    current = now or utc_now()
    state = ensure_state(character_name=character_name, now=current)
    energy, patience = apply_deltas(state, energy=energy_delta, patience=patience_delta)
    changes: dict[str, Any] = {
        "energy": energy,
        "patience": patience,
        "mood": mood,
        "current_focus": current_focus,
    }
    if count_interaction:
        changes["interactions_today"] = int(state.get("interactions_today") or 0) + 1
    return update_state(character_name=character_name, changes=changes, now=current) or state
