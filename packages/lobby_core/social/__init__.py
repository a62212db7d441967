"""Relationship ledger rules, event origins, consequence tiers, and neglect decay."""

from .affinity import apply_interaction, auto_label, clamp_affinity, describe_affinity
from .consequences import ConsequencePlan, plan_consequence, tier_for_affinity
from .decay import DecayStep, natural_decay, plan_decay
from .events import DERIVED_FACT, RAW_INTERACTION, group_events_by_pair

__all__ = [
    "apply_interaction",
    "auto_label",
    "clamp_affinity",
    "describe_affinity",
    "ConsequencePlan",
    "plan_consequence",
    "tier_for_affinity",
    "DecayStep",
    "natural_decay",
    "plan_decay",
    "DERIVED_FACT",
    "RAW_INTERACTION",
    "group_events_by_pair",
]
