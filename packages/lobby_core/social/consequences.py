"""Consequence tiers: turning sustained affinity extremes into memories and wants."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import random
from typing import Any


CONSEQUENCE_DEDUP_WINDOW = timedelta(hours=12)
CONFRONTATION_EVENT_TYPE = "confrontation"
CONFRONTATION_INTENSITY = 8

TONE_SHIFT = "tone_shift"
AVOIDANCE = "avoidance"
CONFRONTATION = "confrontation"
BONDING = "bonding"


@dataclass(frozen=True)
class TierSpec:
    tier: str
    memory_type: str
    importance: int
    emotional_tags: tuple[str, ...]
    ttl: timedelta
    templates: tuple[str, ...]
    want_template: str | None = None


TIER_SPECS: dict[str, TierSpec] = {
    TONE_SHIFT: TierSpec(
        tier=TONE_SHIFT,
        memory_type="relationship_cooling",
        importance=4,
        emotional_tags=("guarded", "distant"),
        ttl=timedelta(hours=24),
        templates=(
            "Something about {target} keeps rubbing me the wrong way. I choose my words more carefully around them now.",
            "It used to be easy around {target}. Lately there's a gap opening up and I'm watching what I say.",
            "Things with {target} aren't what they were. I'm keeping my guard up a little.",
        ),
    ),
    AVOIDANCE: TierSpec(
        tier=AVOIDANCE,
        memory_type="relationship_avoidance",
        importance=6,
        emotional_tags=("distrustful", "avoidant"),
        ttl=timedelta(hours=48),
        templates=(
            "I don't trust {target} right now. Better to keep some distance.",
            "{target} and I aren't on good terms. I catch myself looking away when they walk in.",
            "Being near {target} makes me tense. I'd rather be anywhere they aren't.",
        ),
        want_template="Avoid being alone with {target}, things are too tense right now",
    ),
    CONFRONTATION: TierSpec(
        tier=CONFRONTATION,
        memory_type="relationship_confrontation",
        importance=8,
        emotional_tags=("hostile", "confrontational"),
        ttl=timedelta(hours=72),
        templates=(
            "{target} and I are past being polite. Something has to give.",
            "Every time I see {target} something in me winds tighter. This can't go on.",
            "I've been patient with {target}. I'm finished being patient.",
        ),
        want_template="Confront {target} about what's been building between us",
    ),
    BONDING: TierSpec(
        tier=BONDING,
        memory_type="relationship_bonding",
        importance=5,
        emotional_tags=("grateful", "connected"),
        ttl=timedelta(hours=48),
        templates=(
            "Something shifted between me and {target}. I feel closer to them than I expected to.",
            "{target} surprised me, in a good way. I think we're building something real.",
            "The way {target} showed up for me lately... I won't forget it.",
        ),
    ),
}

CONSEQUENCE_MEMORY_TYPES = tuple(spec.memory_type for spec in TIER_SPECS.values())


def tier_for_affinity(affinity: int) -> str | None:
    if affinity < 10:
        return CONFRONTATION
    if affinity < 30:
        return AVOIDANCE
    if affinity < 50:
        return TONE_SHIFT
    if affinity >= 80:
        return BONDING
    return None


@dataclass(frozen=True)
class ConsequencePlan:
    tier: str
    character_name: str
    target_name: str
    affinity: int
    memory: dict[str, Any]
    want_text: str | None = None
    escalation: dict[str, Any] | None = None


def plan_consequence(
    *,
    tier: str,
    character_name: str,
    target_name: str,
    affinity: int,
    now: datetime,
    rng: random.Random | None = None,
) -> ConsequencePlan:
    spec = TIER_SPECS[tier]
    chooser = rng or random
    template = chooser.choice(spec.templates)
    memory = {
        "character_name": character_name,
        "content": template.format(target=target_name),
        "memory_type": spec.memory_type,
        "importance": spec.importance,
        "emotional_tags": list(spec.emotional_tags),
        "related_characters": [target_name],
        "expires_at": now + spec.ttl,
    }
    want_text = spec.want_template.format(target=target_name) if spec.want_template else None
    escalation = None
    if tier == CONFRONTATION:
        escalation = {
            "character_name": character_name,
            "target_name": target_name,
            "event_type": CONFRONTATION_EVENT_TYPE,
            "intensity": CONFRONTATION_INTENSITY,
            "context": f"{character_name} has reached breaking point with {target_name} (affinity: {affinity})",
        }
    return ConsequencePlan(
        tier=tier,
        character_name=character_name,
        target_name=target_name,
        affinity=affinity,
        memory=memory,
        want_text=want_text,
        escalation=escalation,
    )
