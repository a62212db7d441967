"""Memory lifecycle, review planning, conversation sweep planning, and life chapters."""

from .guardian import FadeUpdate, build_chapter_prompt, parse_chapter, plan_fade_updates
from .lifecycle import default_expiry, resolve_expiry
from .review import ReviewUpdate, build_review_prompt, plan_review_updates
from .sweep import SweepVerdict, build_sweep_prompt, parse_sweep_verdict, schedule_guard, window_guard, window_start

__all__ = [
    "FadeUpdate",
    "build_chapter_prompt",
    "parse_chapter",
    "plan_fade_updates",
    "default_expiry",
    "resolve_expiry",
    "ReviewUpdate",
    "build_review_prompt",
    "plan_review_updates",
    "SweepVerdict",
    "build_sweep_prompt",
    "parse_sweep_verdict",
    "schedule_guard",
    "window_guard",
    "window_start",
]
