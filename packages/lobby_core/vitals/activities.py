"""Vitals math: recovery activities, clamping, cooldown, and daily restoration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import math
from typing import Any

from packages.lobby_core.clock import parse_utc


MIN_STAT = 0
MAX_STAT = 100
ACTIVITY_COOLDOWN = timedelta(minutes=5)
DEFAULT_FOCUS = "the_floor"
BREAK_ROOM_FOCUS = "break_room"
DEFAULT_MOOD = "neutral"
NEEDS_BREAK_THRESHOLD = 20

BREAK_ROOM_MEMORY_TYPE = "break_room"
BREAK_ROOM_MEMORY_IMPORTANCE = 3
BREAK_ROOM_MEMORY_TTL = timedelta(hours=1)

DAILY_ENERGY_RESTORE = 30
DAILY_PATIENCE_RESTORE = 20
NEGATIVE_MOODS = frozenset(
    {
        "frustrated",
        "exhausted",
        "annoyed",
        "stressed",
        "exasperated",
        "irritated",
        "anxious",
        "melancholy",
        "suspicious",
        "withdrawn",
        "restless",
        "prickly",
    }
)


@dataclass(frozen=True)
class Activity:
    key: str
    energy: int
    patience: int
    mood: str
    message: str
    duration: str
    target_bonus: tuple[int, int, str] | None = None

    @property
    def affects_target(self) -> bool:
        return self.target_bonus is not None

    def describe(self, target_name: str | None = None) -> str:
        return self.message.format(target=target_name or "a friend")


ACTIVITIES: dict[str, Activity] = {
    activity.key: activity
    for activity in (
        Activity("take_nap", 40, 10, "rested", "took a nap in the break room", "a quick power nap"),
        Activity("coffee_break", 25, 5, "caffeinated", "grabbed some coffee", "a coffee break"),
        Activity("snack_time", 15, 15, "content", "had a snack", "snack time"),
        Activity("deep_breath", 5, 30, "centered", "took a few deep breaths", "a moment to breathe"),
        Activity("vent_session", -5, 40, "relieved", "vented about the day", "a venting session"),
        Activity(
            "pet_the_void",
            10,
            20,
            "comforted",
            "stared into the void, and the void stared back kindly",
            "some quality void time",
        ),
        Activity(
            "check_on_friend",
            -5,
            10,
            "caring",
            "checked on {target}",
            "a supportive visit",
            target_bonus=(15, 20, "supported"),
        ),
        Activity(
            "existential_acceptance",
            20,
            25,
            "philosophical",
            "made peace with the office being chaos",
            "some existential reflection",
        ),
    )
}


class UnknownActivityError(ValueError):
    def __init__(self, action: str) -> None:
        super().__init__(f"Unknown activity: {action}")
        self.action = action
        self.available = sorted(ACTIVITIES)


class ActivityCooldownError(RuntimeError):
    def __init__(self, character_name: str, remaining_ms: int) -> None:
        super().__init__(f"{character_name} needs to rest before another activity")
        self.character_name = character_name
        self.remaining_ms = int(remaining_ms)

    @property
    def display(self) -> str:
        return cooldown_display(self.remaining_ms)


def get_activity(action: str) -> Activity:
    activity = ACTIVITIES.get(str(action or "").strip())
    if activity is None:
        raise UnknownActivityError(str(action))
    return activity


def clamp_stat(value: Any) -> int:
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        number = MIN_STAT
    return max(MIN_STAT, min(MAX_STAT, number))


def cooldown_remaining_ms(last_activity_at: Any, now: datetime) -> int:
    """Milliseconds left in the shared cooldown; 0 once the boundary is reached."""
    last = parse_utc(last_activity_at)
    if last is None:
        return 0
    elapsed = now - last
    if elapsed >= ACTIVITY_COOLDOWN:
        return 0
    return max(1, int(math.ceil((ACTIVITY_COOLDOWN - elapsed).total_seconds() * 1000)))


def cooldown_display(remaining_ms: int) -> str:
    seconds = int(math.ceil(remaining_ms / 1000.0))
    minutes, secs = divmod(seconds, 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def apply_deltas(state: dict[str, Any], *, energy: int = 0, patience: int = 0) -> tuple[int, int]:
    return (
        clamp_stat(int(state.get("energy") or 0) + int(energy)),
        clamp_stat(int(state.get("patience") or 0) + int(patience)),
    )


def break_room_memory_content(activity: Activity, target_name: str | None = None) -> str:
    return (
        f"Took {activity.duration} in the break room. {activity.describe(target_name)}. "
        f"Feeling {activity.mood} now."
    )


def daily_restore(state: dict[str, Any]) -> dict[str, Any]:
    energy, patience = apply_deltas(state, energy=DAILY_ENERGY_RESTORE, patience=DAILY_PATIENCE_RESTORE)
    mood = str(state.get("mood") or DEFAULT_MOOD)
    if mood.strip().lower() in NEGATIVE_MOODS:
        mood = DEFAULT_MOOD
    return {
        "energy": energy,
        "patience": patience,
        "mood": mood,
        "interactions_today": 0,
    }


def categorize_states(states: list[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    return {
        "exhausted": [s for s in states if int(s.get("energy") or 0) == 0],
        "done": [s for s in states if int(s.get("patience") or 0) == 0],
        "needs_break": [
            s
            for s in states
            if int(s.get("energy") or 0) <= NEEDS_BREAK_THRESHOLD
            or int(s.get("patience") or 0) <= NEEDS_BREAK_THRESHOLD
        ],
        "in_break_room": [s for s in states if s.get("current_focus") == BREAK_ROOM_FOCUS],
    }
