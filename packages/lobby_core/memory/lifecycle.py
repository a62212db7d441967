"""Memory record lifecycle rules: tiers, importance bounds, expiry windows."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable


MEMORY_TIERS = ("working", "core")
MIN_IMPORTANCE = 1
MAX_IMPORTANCE = 10

# Review
REVIEW_BATCH_LIMIT = 12
REVIEW_MIN_CANDIDATES = 3
REVIEW_CONTENT_PREVIEW = 200
KEEP_EXTENSION = timedelta(days=14)
KEEP_IMPORTANCE_CAP = 8
FADE_IMPORTANCE_FLOOR = 3
FADE_TTL = timedelta(days=7)
FADE_FRAGMENT_LIMIT = 100
FADE_FALLBACK_PREVIEW = 60
FADE_PREFIX = "[Faded]"
FADED_MEMORY_TYPE = "faded"
FORGET_TTL = timedelta(hours=1)

# Emitters without their own expiry policy
DEFAULT_WORKING_TTL = timedelta(days=7)
LONG_WORKING_TTL = timedelta(days=30)

# Daily cleanup
LOW_VALUE_IMPORTANCE = 5
LOW_VALUE_MAX_AGE = timedelta(days=3)
IMPORTANCE_DECAY_RULES = (
    # (lowest, highest, age before decay, decayed importance)
    (9, 10, timedelta(hours=24), 7),
    (8, 8, timedelta(hours=48), 6),
)


def clamp_importance(value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = 5
    return max(MIN_IMPORTANCE, min(MAX_IMPORTANCE, number))


def normalize_tier(value: str | None) -> str:
    tier = str(value or "working").strip().lower()
    if tier not in MEMORY_TIERS:
        return "working"
    return tier


def default_expiry(*, importance: int, now: datetime) -> datetime:
    if int(importance) >= 9:
        return now + LONG_WORKING_TTL
    return now + DEFAULT_WORKING_TTL


def resolve_expiry(
    *,
    importance: int,
    tier: str,
    pinned: bool,
    expires_at: datetime | None,
    now: datetime,
) -> tuple[bool, datetime | None]:
    """Return ``(pinned, expires_at)`` honoring "expires_at is null iff pinned"."""
    if pinned or normalize_tier(tier) == "core":
        return True, None
    if expires_at is None:
        return False, default_expiry(importance=importance, now=now)
    return False, expires_at


def normalize_tags(values: Iterable[Any] | None) -> list[str]:
    out: list[str] = []
    for raw in values or ():
        tag = str(raw or "").strip()
        if tag and tag not in out:
            out.append(tag)
    return out


def age_label(created_at: datetime | None, now: datetime) -> str:
    if created_at is None:
        return "unknown age"
    hours = max(0, int(round((now - created_at).total_seconds() / 3600.0)))
    if hours < 24:
        return f"{hours}h ago"
    return f"{int(round(hours / 24.0))}d ago"
