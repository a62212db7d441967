"""Conversation sweep planning: window guards, prompt, and verdict normalization."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import permutations
from typing import Any

from packages.lobby_core.clock import iso_utc, parse_utc, utc_date_key


MIN_MESSAGES = 8
MIN_SPEAKERS = 3
SWEEP_COOLDOWN = timedelta(minutes=20)
DAILY_SWEEP_CAP = 8
MIN_SWEEP_IMPORTANCE = 5
MAX_SWEEP_IMPORTANCE = 8
LONG_SWEEP_TTL = timedelta(days=14)
SHORT_SWEEP_TTL = timedelta(days=7)
GROUP_MEMORY_PREFIX = "[Group memory]"
SWEEP_MEMORY_TYPE = "conversation_sweep"
SWEEP_TYPES = ("banter", "bonding", "conflict", "revelation", "callback", "vulnerability")

LAST_SWEEP_SETTING = "conversation_sweep_last"
SWEEP_COUNT_SETTING = "conversation_sweep_count"


@dataclass(frozen=True)
class SweepVerdict:
    memorable: bool
    importance: int = MIN_SWEEP_IMPORTANCE
    summary: str = ""
    participants: list[str] = field(default_factory=list)
    emotional_tone: str = ""
    moment_type: str = "banter"


def distinct_speakers(messages: list[dict[str, Any]]) -> list[str]:
    speakers: list[str] = []
    for msg in messages:
        speaker = str(msg.get("speaker") or "").strip()
        if speaker and speaker not in speakers:
            speakers.append(speaker)
    return speakers


def window_guard(messages: list[dict[str, Any]]) -> str | None:
    if len(messages) < MIN_MESSAGES:
        return "insufficient_messages"
    if len(distinct_speakers(messages)) < MIN_SPEAKERS:
        return "insufficient_speakers"
    return None


def schedule_guard(
    *,
    last_sweep: dict[str, Any] | None,
    sweep_count: dict[str, Any] | None,
    now: datetime,
) -> str | None:
    """Check the persisted cooldown timestamp, then today's counter."""
    last_at = parse_utc((last_sweep or {}).get("timestamp"))
    if last_at is not None and now - last_at < SWEEP_COOLDOWN:
        return "cooldown"
    if sweeps_today(sweep_count, now) >= DAILY_SWEEP_CAP:
        return "daily_cap_reached"
    return None


def sweeps_today(sweep_count: dict[str, Any] | None, now: datetime) -> int:
    state = sweep_count or {}
    if state.get("date") != utc_date_key(now):
        return 0
    try:
        return max(0, int(state.get("count") or 0))
    except (TypeError, ValueError):
        return 0


def next_schedule_state(
    *, sweep_count: dict[str, Any] | None, now: datetime
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Setting values to persist after a completed sweep: (last, count)."""
    return (
        {"timestamp": iso_utc(now)},
        {"date": utc_date_key(now), "count": sweeps_today(sweep_count, now) + 1},
    )


def window_start(*, last_sweep: dict[str, Any] | None, now: datetime, lookback: timedelta) -> datetime:
    """Earliest message time a new window may include: nothing already judged by the last sweep."""
    start = now - lookback
    last_at = parse_utc((last_sweep or {}).get("timestamp"))
    if last_at is not None and last_at >= start:
        return last_at + timedelta(microseconds=1)
    return start


def build_transcript(messages: list[dict[str, Any]]) -> str:
    return "\n".join(f"{msg.get('speaker')}: {msg.get('content')}" for msg in messages)


def build_sweep_prompt(messages: list[dict[str, Any]]) -> str:
    transcript = build_transcript(messages)
    return (
        "You are evaluating a group conversation in an office where several characters talk "
        "throughout the day.\n\n"
        "Was anything in this stretch of conversation worth remembering? Not every exchange is. "
        "Look for running jokes, moments of real connection, conflict, surprising revelations, "
        "callbacks to earlier events, or someone letting their guard down.\n\n"
        f"Conversation:\n{transcript}\n\n"
        "Respond with ONLY a JSON object (no markdown):\n"
        '{"memorable": true|false, "importance": 5-8, "summary": "one sentence describing what happened", '
        '"participants": ["names of the characters who were actually part of the moment"], '
        '"emotional_tone": "one word", '
        '"type": "banter|bonding|conflict|revelation|callback|vulnerability"}\n\n'
        'If nothing stands out, respond {"memorable": false}.'
    )


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return False


def clamp_sweep_importance(value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = MIN_SWEEP_IMPORTANCE
    return max(MIN_SWEEP_IMPORTANCE, min(MAX_SWEEP_IMPORTANCE, number))


def match_participants(raw: Any, speakers: list[str]) -> list[str]:
    """Keep named participants that spoke in the window, using the window's spelling."""
    if not isinstance(raw, list):
        return []
    by_key = {speaker.lower(): speaker for speaker in speakers}
    out: list[str] = []
    for item in raw:
        key = str(item or "").strip().lower()
        name = by_key.get(key)
        if name and name not in out:
            out.append(name)
    return out


def parse_sweep_verdict(payload: Any, *, speakers: list[str]) -> SweepVerdict:
    """A memorable verdict needs a summary; with no usable participants every speaker shares it."""
    if not isinstance(payload, dict) or not _coerce_bool(payload.get("memorable")):
        return SweepVerdict(memorable=False)
    summary = str(payload.get("summary") or "").strip()
    if not summary:
        return SweepVerdict(memorable=False)
    moment_type = str(payload.get("type") or "").strip().lower()
    if moment_type not in SWEEP_TYPES:
        moment_type = "banter"
    return SweepVerdict(
        memorable=True,
        importance=clamp_sweep_importance(payload.get("importance")),
        summary=summary,
        participants=match_participants(payload.get("participants"), speakers) or list(speakers),
        emotional_tone=str(payload.get("emotional_tone") or "").strip(),
        moment_type=moment_type,
    )


def sweep_expiry(importance: int, now: datetime) -> datetime:
    if importance >= MAX_SWEEP_IMPORTANCE:
        return now + LONG_SWEEP_TTL
    return now + SHORT_SWEEP_TTL


def group_memory_content(summary: str) -> str:
    return f"{GROUP_MEMORY_PREFIX} {summary}"


def directed_pairs(participants: list[str]) -> list[tuple[str, str]]:
    return list(permutations(participants, 2))
