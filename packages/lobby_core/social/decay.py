"""Neglect decay: affinity toward a human drifts down when nobody talks.

Nothing moves inside the grace period. One run loses at most
``NATURAL_DECAY_CAP`` and a pair loses at most ``DAILY_DECAY_CAP`` per UTC day.
Affinity never decays below ``max(seed_affinity, 0)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import math
import random
from typing import Any, Mapping


GRACE_PERIOD_DAYS = 2
MAX_DECAY_DAYS = 5
NATURAL_DECAY_CAP = -5
DAILY_DECAY_CAP = -8
DEFAULT_SENSITIVITY = 1.0
NEGLECT_EVENT_TYPE = "neglect_decay"
NEGLECT_MEMORY_TYPE = "affinity_loss_natural_decay"
NEGLECT_MEMORY_TTL = timedelta(hours=48)

# (minimum loss, chance of an in-character memory) checked top-down
NARRATIVE_CHANCES = (
    (5, 0.70),
    (3, 0.40),
    (1, 0.15),
)

NEGLECT_TEMPLATES = (
    "It's been a while since {target} said anything to me. The quiet is starting to feel intentional.",
    "{target} used to check in. Now the messages just stopped. I keep rereading the last thing either of us said.",
    "I thought about reaching out to {target}. Then I thought about how long it's been since they reached out to me. And I didn't.",
    "The building feels bigger when someone stops talking to you. {target}'s silence takes up more space than their words ever did.",
)


@dataclass(frozen=True)
class DecayStep:
    character_name: str
    target_name: str
    old_affinity: int
    new_affinity: int
    delta: int
    days_since_interaction: int


def parse_sensitivities(raw: str | None) -> dict[str, float]:
    """Parse ``"Kevin=1.5,Steele=0.2"``; malformed entries are ignored."""
    out: dict[str, float] = {}
    for part in str(raw or "").split(","):
        name, sep, value = part.partition("=")
        if not sep or not name.strip():
            continue
        try:
            out[name.strip()] = max(0.0, float(value))
        except ValueError:
            continue
    return out


def natural_decay(*, days_since: float, sensitivity: float) -> int:
    if sensitivity <= 0 or days_since < GRACE_PERIOD_DAYS:
        return 0
    days_past_grace = days_since - GRACE_PERIOD_DAYS
    raw = math.floor(-1 * sensitivity * min(days_past_grace, MAX_DECAY_DAYS))
    return max(raw, NATURAL_DECAY_CAP)


def plan_decay(
    *,
    relationship: Mapping[str, Any],
    last_interaction_at: datetime,
    lost_today: int,
    sensitivity: float,
    now: datetime,
) -> DecayStep | None:
    """Return the step to apply, or None when the pair is untouched this run."""
    remaining = DAILY_DECAY_CAP - min(0, int(lost_today))
    if remaining >= 0:
        return None
    days_since = (now - last_interaction_at).total_seconds() / 86400
    raw = natural_decay(days_since=days_since, sensitivity=sensitivity)
    if raw == 0:
        return None
    affinity = int(relationship["affinity"])
    floor = min(affinity, max(int(relationship.get("seed_affinity") or 0), 0))
    new_affinity = max(floor, affinity + max(raw, remaining))
    if new_affinity == affinity:
        return None
    return DecayStep(
        character_name=str(relationship["character_name"]),
        target_name=str(relationship["target_name"]),
        old_affinity=affinity,
        new_affinity=new_affinity,
        delta=new_affinity - affinity,
        days_since_interaction=int(days_since),
    )


def should_narrate(delta: int, rng: random.Random | None = None) -> bool:
    loss = abs(int(delta))
    chooser = rng or random
    for minimum, chance in NARRATIVE_CHANCES:
        if loss >= minimum:
            return chooser.random() < chance
    return False


def neglect_memory(step: DecayStep, *, now: datetime, rng: random.Random | None = None) -> dict[str, Any]:
    chooser = rng or random
    return {
        "character_name": step.character_name,
        "content": chooser.choice(NEGLECT_TEMPLATES).format(target=step.target_name),
        "memory_type": NEGLECT_MEMORY_TYPE,
        "importance": 6 if abs(step.delta) >= 4 else 5,
        "emotional_tags": ["lonely", "neglected"],
        "related_characters": [step.target_name],
        "expires_at": now + NEGLECT_MEMORY_TTL,
    }
