"""Relationship event origins and batching."""

from __future__ import annotations

from datetime import timedelta
from typing import Any


RAW_INTERACTION = "raw_interaction"
DERIVED_FACT = "derived_fact"
EVENT_ORIGINS = (RAW_INTERACTION, DERIVED_FACT)

EVENT_LOOKBACK = timedelta(hours=24)
EVENT_BATCH_LIMIT = 100


def normalize_origin(value: str | None) -> str:
    origin = str(value or RAW_INTERACTION).strip().lower()
    if origin not in EVENT_ORIGINS:
        raise ValueError(f"Unknown event origin: {value}")
    return origin


def initial_processed(origin: str, processed: bool = False) -> bool:
    """Derived facts never enter the unprocessed queue."""
    return True if origin == DERIVED_FACT else bool(processed)


def group_events_by_pair(events: list[dict[str, Any]]) -> dict[tuple[str, str], list[dict[str, Any]]]:
    groups: dict[tuple[str, str], list[dict[str, Any]]] = {}
    for event in events:
        key = (str(event.get("character_name") or ""), str(event.get("target_name") or ""))
        groups.setdefault(key, []).append(event)
    return groups
