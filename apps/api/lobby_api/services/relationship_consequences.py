"""Relationship consequence job: drain the event log and react to affinity extremes.

Every event in a drained batch ends up processed, whether or not its pair
produced a consequence. Confrontations append their own escalation event as a
derived fact that is written already processed, so the job never feeds itself.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
import logging
import random

from packages.lobby_core.clock import utc_now
from packages.lobby_core.social.consequences import (
    CONSEQUENCE_DEDUP_WINDOW,
    CONSEQUENCE_MEMORY_TYPES,
    plan_consequence,
    tier_for_affinity,
)
from packages.lobby_core.social.events import (
    DERIVED_FACT,
    EVENT_BATCH_LIMIT,
    EVENT_LOOKBACK,
    group_events_by_pair,
)

from ..storage.goals import create_goal, has_active_want_mentioning, want_scope
from ..storage.memories import create_memory, has_recent_memory
from ..storage.relationships import (
    append_event,
    expire_stale_events,
    get_relationship,
    list_unprocessed_events,
    mark_event_processed,
)


logger = logging.getLogger("lobby_api.relationship_consequences")


def _mark_processed(events: list[dict[str, Any]], now: datetime) -> int:
    marked = 0
    for event in events:
        try:
            if mark_event_processed(event_id=event["id"], now=now):
                marked += 1
        except Exception as exc:
            logger.warning("[CONSEQUENCE] Failed to mark event %s processed: %s", event.get("id"), exc)
    return marked


def _react_to_pair(
    *,
    character_name: str,
    target_name: str,
    now: datetime,
    rng: Optional[random.Random],
    summary: dict[str, Any],
) -> None:
    relationship = get_relationship(character_name=character_name, target_name=target_name)
    if relationship is None:
        return
    affinity = int(relationship["affinity"])
    tier = tier_for_affinity(affinity)
    if tier is None:
        return
    if has_recent_memory(
        character_name=character_name,
        memory_types=list(CONSEQUENCE_MEMORY_TYPES),
        related_to=target_name,
        since=now - CONSEQUENCE_DEDUP_WINDOW,
    ):
        summary["pairs_deduplicated"] += 1
        return

    plan = plan_consequence(
        tier=tier,
        character_name=character_name,
        target_name=target_name,
        affinity=affinity,
        now=now,
        rng=rng,
    )
    try:
        create_memory(now=now, **plan.memory)
        summary["memories_created"] += 1
        logger.info(
            "[CONSEQUENCE] %s: %s memory about %s (affinity: %d)",
            character_name,
            tier,
            target_name,
            affinity,
        )
    except Exception as exc:
        logger.warning("[CONSEQUENCE] Failed to create memory for %s: %s", character_name, exc)

    if plan.want_text:
        try:
            if not has_active_want_mentioning(character_name=character_name, text=target_name):
                create_goal(
                    character_name=character_name,
                    goal_text=plan.want_text,
                    goal_type="want",
                    scope=want_scope(target_name),
                    now=now,
                )
                summary["wants_created"] += 1
        except Exception as exc:
            logger.warning("[CONSEQUENCE] Failed to create want for %s: %s", character_name, exc)

    if plan.escalation:
        try:
            append_event(origin=DERIVED_FACT, processed=True, now=now, **plan.escalation)
            summary["escalations_logged"] += 1
        except Exception as exc:
            logger.warning("[CONSEQUENCE] Failed to log escalation for %s: %s", character_name, exc)


def process_relationship_events(
    *,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> dict[str, Any]:
    current = now or utc_now()
    summary: dict[str, Any] = {
        "ok": True,
        "events_processed": 0,
        "memories_created": 0,
        "wants_created": 0,
        "escalations_logged": 0,
        "pairs_evaluated": 0,
        "pairs_deduplicated": 0,
        "stale_events_expired": 0,
    }
    try:
        since = current - EVENT_LOOKBACK
        summary["stale_events_expired"] = expire_stale_events(before=since, now=current)
        events = list_unprocessed_events(since=since, limit=EVENT_BATCH_LIMIT)
        groups = group_events_by_pair(events)
        summary["pairs_evaluated"] = len(groups)
        for (character_name, target_name), pair_events in groups.items():
            try:
                _react_to_pair(
                    character_name=character_name,
                    target_name=target_name,
                    now=current,
                    rng=rng,
                    summary=summary,
                )
            except Exception as exc:
                logger.warning(
                    "[CONSEQUENCE] Pair %s -> %s failed: %s",
                    character_name,
                    target_name,
                    exc,
                )
            summary["events_processed"] += _mark_processed(pair_events, current)
    except Exception as exc:
        logger.exception("[CONSEQUENCE] Run failed: %s", exc)
        summary["ok"] = False
        summary["reason"] = "error"
        summary["error"] = f"{exc.__class__.__name__}: {exc}"
        return summary

    logger.info(
        "[CONSEQUENCE] Complete: %d events, %d memories, %d wants",
        summary["events_processed"],
        summary["memories_created"],
        summary["wants_created"],
    )
    return summary
