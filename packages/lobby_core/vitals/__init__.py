"""Character vitals: recovery activities, cooldown, and daily restoration."""

from .activities import (
    ACTIVITIES,
    ActivityCooldownError,
    UnknownActivityError,
    clamp_stat,
    cooldown_remaining_ms,
    daily_restore,
    get_activity,
)

__all__ = [
    "ACTIVITIES",
    "ActivityCooldownError",
    "UnknownActivityError",
    "clamp_stat",
    "cooldown_remaining_ms",
    "daily_restore",
    "get_activity",
]
