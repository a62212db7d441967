"""Affinity decay job: characters cool toward humans who stopped talking to them.

Each applied step is logged as a derived fact, so the consequence job never
treats decay as a fresh interaction.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
import logging
import os
import random

from packages.lobby_core.clock import parse_utc, utc_now
from packages.lobby_core.social.affinity import apply_interaction
from packages.lobby_core.social.decay import (
    DEFAULT_SENSITIVITY,
    NEGLECT_EVENT_TYPE,
    neglect_memory,
    parse_sensitivities,
    plan_decay,
    should_narrate,
)
from packages.lobby_core.social.events import DERIVED_FACT

from ..storage.character_state import human_characters, list_states
from ..storage.memories import create_memory
from ..storage.relationships import (
    append_event,
    latest_interaction_at,
    list_all_relationships,
    sum_event_deltas,
    update_affinity,
)


logger = logging.getLogger("lobby_api.affinity_decay")


def _start_of_day(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def _all_humans() -> set[str]:
    humans = set(human_characters())
    humans.update(state["character_name"] for state in list_states() if state["is_human"])
    return humans


def run_affinity_decay(
    *,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> dict[str, Any]:
    current = now or utc_now()
    summary: dict[str, Any] = {
        "ok": True,
        "pairs_checked": 0,
        "pairs_decayed": 0,
        "total_loss": 0,
        "memories_created": 0,
        "changes": [],
    }
    try:
        humans = _all_humans()
        sensitivities = parse_sensitivities(os.environ.get("LOBBY_DECAY_SENSITIVITY"))
        day_start = _start_of_day(current)
        for row in list_all_relationships():
            character_name = row["character_name"]
            target_name = row["target_name"]
            if target_name not in humans or character_name in humans:
                continue
            summary["pairs_checked"] += 1
            try:
                last_seen = parse_utc(
                    latest_interaction_at(character_name=character_name, target_name=target_name)
                ) or parse_utc(row["created_at"]) or current
                step = plan_decay(
                    relationship=row,
                    last_interaction_at=last_seen,
                    lost_today=sum_event_deltas(
                        character_name=character_name,
                        target_name=target_name,
                        event_type=NEGLECT_EVENT_TYPE,
                        since=day_start,
                    ),
                    sensitivity=sensitivities.get(character_name, DEFAULT_SENSITIVITY),
                    now=current,
                )
                if step is None:
                    continue
                new_affinity, new_label, applied = apply_interaction(
                    affinity=step.old_affinity,
                    label=row["relationship_label"],
                    delta=step.delta,
                )
                update_affinity(
                    character_name=character_name,
                    target_name=target_name,
                    affinity=new_affinity,
                    label=new_label,
                    now=current,
                )
                append_event(
                    character_name=character_name,
                    target_name=target_name,
                    event_type=NEGLECT_EVENT_TYPE,
                    intensity=abs(applied),
                    affinity_delta=applied,
                    context=(
                        f"{character_name} has not heard from {target_name} in "
                        f"{step.days_since_interaction} days"
                    ),
                    origin=DERIVED_FACT,
                    now=current,
                )
            except Exception as exc:
                logger.warning("[AFFINITY-DECAY] %s -> %s failed: %s", character_name, target_name, exc)
                continue

            summary["pairs_decayed"] += 1
            summary["total_loss"] += applied
            summary["changes"].append(
                {
                    "character": character_name,
                    "target": target_name,
                    "old_affinity": step.old_affinity,
                    "new_affinity": new_affinity,
                    "delta": applied,
                }
            )
            logger.info(
                "[AFFINITY-DECAY] %s -> %s: %d -> %d after %d quiet days",
                character_name,
                target_name,
                step.old_affinity,
                new_affinity,
                step.days_since_interaction,
            )
            if should_narrate(applied, rng):
                try:
                    create_memory(now=current, **neglect_memory(step, now=current, rng=rng))
                    summary["memories_created"] += 1
                except Exception as exc:
                    logger.warning("[AFFINITY-DECAY] Failed to store memory for %s: %s", character_name, exc)
    except Exception as exc:
        logger.exception("[AFFINITY-DECAY] Run failed: %s", exc)
        summary["ok"] = False
        summary["reason"] = "error"
        summary["error"] = f"{exc.__class__.__name__}: {exc}"
        return summary

    logger.info(
        "[AFFINITY-DECAY] Complete: %d of %d pairs decayed, total %d",
        summary["pairs_decayed"],
        summary["pairs_checked"],
        summary["total_loss"],
    )
    return summary
