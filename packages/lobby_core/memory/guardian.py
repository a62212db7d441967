"""Life chapters: condense fading working memories into one pinned core memory.

This is the only path that promotes meaning from the working tier into the
core tier. The details still fade; the chapter keeps what they meant.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import math
from typing import Any, Iterable

from packages.lobby_core.clock import parse_utc

from .lifecycle import age_label, normalize_tags


GUARDIAN_SCAN_LIMIT = 200
GUARDIAN_MIN_WORKING = 20
GUARDIAN_MIN_FADING = 3
FADING_IMPORTANCE = 6
FADING_HORIZON = timedelta(days=7)
CHAPTER_MEMORY_TYPE = "life_chapter"
CHAPTER_IMPORTANCE = 9
CHAPTER_MIN_LENGTH = 20
CHAPTER_TAG_LIMIT = 5
CHAPTER_RELATED_LIMIT = 10
CHAPTER_DEFAULT_TAG = "reflective"
CONDENSED_LENGTH = 50


@dataclass(frozen=True)
class FadeUpdate:
    memory_id: str
    changes: dict[str, Any]


def is_fading(memory: dict[str, Any], now: datetime) -> bool:
    if int(memory.get("importance") or 0) <= FADING_IMPORTANCE:
        return True
    expires_at = parse_utc(memory.get("expires_at"))
    return expires_at is not None and expires_at <= now + FADING_HORIZON


def select_fading(memories: Iterable[dict[str, Any]], now: datetime) -> list[dict[str, Any]]:
    return [m for m in memories if is_fading(m, now)]


def period_summary(memories: list[dict[str, Any]]) -> str:
    stamps = sorted(ts for ts in (parse_utc(m.get("created_at")) for m in memories) if ts is not None)
    if not stamps:
        return "an unknown stretch of time"
    earliest, latest = stamps[0], stamps[-1]
    span = math.ceil((latest - earliest).total_seconds() / 86400)
    if span <= 1:
        return f"a single day ({earliest.date().isoformat()})"
    return f"{span} days ({earliest.date().isoformat()} to {latest.date().isoformat()})"


def build_chapter_prompt(*, character_name: str, memories: list[dict[str, Any]], now: datetime) -> str:
    lines = []
    for memory in memories:
        tags = memory.get("emotional_tags") or []
        suffix = f" [{', '.join(tags)}]" if tags else ""
        age = age_label(parse_utc(memory.get("created_at")), now)
        lines.append(f"- ({age}) {memory.get('content')}{suffix}")
    memory_list = "\n".join(lines)
    return (
        f"You are {character_name}. These are memories from a recent stretch of your life that are "
        "starting to fade. Before they're gone, capture what they MEANT to you: not the details, "
        "the emotional truth.\n\n"
        f"Fading memories:\n{memory_list}\n\n"
        f"Time covered: {period_summary(memories)}\n\n"
        "Write 2-3 sentences that capture the essence of this period. What did you learn? How did "
        "you change? Write in first person, present tense, as if reflecting on who you've become. "
        "Reference the real people and events from these memories.\n\n"
        'Respond with ONLY a JSON object (no markdown): {"chapter": "your 2-3 sentence reflection"}'
    )


def parse_chapter(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    text = str(payload.get("chapter") or "").strip()
    if len(text) < CHAPTER_MIN_LENGTH:
        return None
    return text


def chapter_tags(memories: list[dict[str, Any]]) -> list[str]:
    tags = normalize_tags(tag for memory in memories for tag in (memory.get("emotional_tags") or []))
    return tags[:CHAPTER_TAG_LIMIT] or [CHAPTER_DEFAULT_TAG]


def chapter_related(memories: list[dict[str, Any]], *, known_names: Iterable[str], owner: str) -> list[str]:
    """Characters named on the memories or mentioned in their text, owner excluded."""
    names = list(known_names)
    related: list[str] = []
    for memory in memories:
        content = str(memory.get("content") or "")
        candidates = list(memory.get("related_characters") or [])
        candidates.extend(name for name in names if name and name in content)
        for name in candidates:
            if name and name != owner and name not in related:
                related.append(name)
    return related[:CHAPTER_RELATED_LIMIT]


def condense(content: str) -> str:
    text = str(content or "")
    if len(text) > CONDENSED_LENGTH:
        return text[:CONDENSED_LENGTH] + "..."
    return text


def plan_fade_updates(memories: list[dict[str, Any]]) -> list[FadeUpdate]:
    """Consolidated memories shrink to a fragment and lose one point of importance."""
    return [
        FadeUpdate(
            memory_id=str(memory["id"]),
            changes={
                "content": condense(memory.get("content") or ""),
                "importance": max(1, int(memory.get("importance") or 5) - 1),
            },
        )
        for memory in memories
    ]
