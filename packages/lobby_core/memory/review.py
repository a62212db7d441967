"""Memory review planning: one batch prompt, per-memory KEEP/FADE/FORGET verdicts.

The character looks back over its oldest working memories and decides which
still matter. This module only builds the prompt and turns a parsed verdict
array into concrete field updates; the review service owns the store calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from packages.lobby_core.clock import parse_utc

from .lifecycle import (
    FADE_FALLBACK_PREVIEW,
    FADE_FRAGMENT_LIMIT,
    FADE_IMPORTANCE_FLOOR,
    FADE_PREFIX,
    FADE_TTL,
    FADED_MEMORY_TYPE,
    FORGET_TTL,
    KEEP_EXTENSION,
    KEEP_IMPORTANCE_CAP,
    REVIEW_CONTENT_PREVIEW,
    age_label,
)


VERDICTS = ("KEEP", "FADE", "FORGET")


@dataclass(frozen=True)
class ReviewUpdate:
    memory_id: str
    verdict: str
    changes: dict[str, Any] = field(default_factory=dict)


def build_review_prompt(*, character_name: str, memories: list[dict[str, Any]], now: datetime) -> str:
    lines: list[str] = []
    for idx, memory in enumerate(memories, start=1):
        age = age_label(parse_utc(memory.get("created_at")), now)
        content = str(memory.get("content") or "")[:REVIEW_CONTENT_PREVIEW]
        memory_type = str(memory.get("memory_type") or "unknown")
        lines.append(f"{idx}. [{memory_type}] ({age}) {content}")
    memory_list = "\n".join(lines)
    return (
        f"You are {character_name}. Here are some of your recent memories: things you experienced, "
        "noticed, or felt.\n\n"
        "For each one, decide honestly: would you still hang onto this?\n\n"
        "KEEP - This still matters to you. It shapes who you are, how you feel about someone, "
        "or what you believe.\n"
        "FADE - The details are blurry but the feeling remains. You remember THAT it happened, "
        "not the specifics. Compress it to a fragment.\n"
        "FORGET - This is noise. It served its moment. Let it go.\n\n"
        f"Your memories:\n{memory_list}\n\n"
        "Respond with ONLY a JSON array (no markdown, no explanation):\n"
        '[{"index":1,"verdict":"KEEP|FADE|FORGET","compressed":"only if FADE, a fragment under 80 characters"}]\n\n'
        "Be honest. Not everything matters. Good banter fades. A moment of genuine connection keeps. "
        "Routine observations forget."
    )


def _verdict_index(raw: Any, size: int) -> int | None:
    if isinstance(raw, bool):
        return None
    try:
        idx = int(raw) - 1
    except (TypeError, ValueError):
        return None
    if idx < 0 or idx >= size:
        return None
    return idx


def _fade_fragment(memory: dict[str, Any], compressed: Any) -> str:
    text = str(compressed or "").strip()
    if text:
        return f"{FADE_PREFIX} {text[:FADE_FRAGMENT_LIMIT]}"
    original = str(memory.get("content") or "")
    return f"{FADE_PREFIX} {original[:FADE_FALLBACK_PREVIEW]}..."


def plan_review_updates(
    *,
    memories: list[dict[str, Any]],
    verdicts: list[Any],
    now: datetime,
) -> list[ReviewUpdate]:
    """Map a parsed verdict array onto the reviewed batch.

    Entries with an unknown verdict or an out-of-range index are ignored, and
    only the first verdict for a given index counts.
    """
    updates: list[ReviewUpdate] = []
    seen: set[int] = set()
    for item in verdicts:
        if not isinstance(item, dict):
            continue
        idx = _verdict_index(item.get("index"), len(memories))
        if idx is None or idx in seen:
            continue
        action = str(item.get("verdict") or "").strip().upper()
        if action not in VERDICTS:
            continue
        seen.add(idx)
        memory = memories[idx]
        memory_id = str(memory.get("id") or "")
        importance = int(memory.get("importance") or 5)

        if action == "KEEP":
            extended = now + KEEP_EXTENSION
            current_expiry = parse_utc(memory.get("expires_at"))
            if current_expiry is not None and current_expiry > extended:
                extended = current_expiry
            updates.append(
                ReviewUpdate(
                    memory_id=memory_id,
                    verdict=action,
                    changes={
                        "expires_at": extended,
                        "importance": max(importance, min(KEEP_IMPORTANCE_CAP, importance + 1)),
                    },
                )
            )
        elif action == "FADE":
            updates.append(
                ReviewUpdate(
                    memory_id=memory_id,
                    verdict=action,
                    changes={
                        "content": _fade_fragment(memory, item.get("compressed")),
                        "importance": max(FADE_IMPORTANCE_FLOOR, importance - 1),
                        "expires_at": now + FADE_TTL,
                        "memory_type": FADED_MEMORY_TYPE,
                    },
                )
            )
        else:
            updates.append(
                ReviewUpdate(
                    memory_id=memory_id,
                    verdict=action,
                    changes={"expires_at": now + FORGET_TTL},
                )
            )
    return updates
