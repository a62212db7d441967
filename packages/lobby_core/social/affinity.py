"""Affinity update contract for the relationship ledger."""

from __future__ import annotations

from typing import Any


MIN_AFFINITY = -100
MAX_AFFINITY = 100
MAX_INTERACTION_DELTA = 15
NEUTRAL_LABEL = "acquaintance"

# (minimum affinity, label) checked top-down
AFFINITY_LABELS = (
    (80, "close bond"),
    (50, "friend"),
    (20, "friendly"),
    (-19, "acquaintance"),
    (-49, "wary"),
    (-79, "hostile"),
)
FLOOR_LABEL = "enemy"
AUTO_LABELS = frozenset([label for _, label in AFFINITY_LABELS] + [FLOOR_LABEL])

AFFINITY_DESCRIPTORS = (
    (80, "deeply bonded"),
    (50, "fond of"),
    (20, "warming to"),
    (-19, "neutral"),
    (-49, "wary of"),
    (-79, "hostile toward"),
)
FLOOR_DESCRIPTOR = "despises"


def clamp_affinity(value: Any) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        number = 0
    return max(MIN_AFFINITY, min(MAX_AFFINITY, number))


def cap_interaction_delta(delta: Any) -> int:
    try:
        number = int(round(float(delta)))
    except (TypeError, ValueError):
        return 0
    return max(-MAX_INTERACTION_DELTA, min(MAX_INTERACTION_DELTA, number))


def auto_label(affinity: int) -> str:
    for threshold, label in AFFINITY_LABELS:
        if affinity >= threshold:
            return label
    return FLOOR_LABEL


def describe_affinity(affinity: int) -> str:
    for threshold, descriptor in AFFINITY_DESCRIPTORS:
        if affinity >= threshold:
            return descriptor
    return FLOOR_DESCRIPTOR


def apply_interaction(*, affinity: int, label: str | None, delta: Any) -> tuple[int, str, int]:
    """Return ``(new_affinity, new_label, applied_delta)`` for one interaction.

    Custom labels survive; only labels from the automatic ladder are replaced.
    """
    applied = cap_interaction_delta(delta)
    new_affinity = clamp_affinity(int(affinity) + applied)
    current = str(label or "").strip()
    if not current or current in AUTO_LABELS:
        new_label = auto_label(new_affinity)
    else:
        new_label = current
    return new_affinity, new_label, new_affinity - int(affinity)
