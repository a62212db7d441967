#!/usr/bin/env python3

from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from packages.lobby_core.clock import iso_utc, parse_utc
from packages.lobby_core.memory.lifecycle import age_label, clamp_importance, resolve_expiry
from packages.lobby_core.memory.review import build_review_prompt, plan_review_updates
from packages.lobby_core.memory.sweep import (
    match_participants,
    next_schedule_state,
    parse_sweep_verdict,
    schedule_guard,
    sweep_expiry,
    window_guard,
    window_start,
)


NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


def _memory(idx: int, *, importance: int = 5, expires_in: timedelta = timedelta(days=2), content: str = "") -> dict:
    return {
        "id": f"mem-{idx}",
        "content": content or f"Memory number {idx} about the copier jamming again",
        "memory_type": "observation",
        "importance": importance,
        "created_at": iso_utc(NOW - timedelta(hours=30)),
        "expires_at": iso_utc(NOW + expires_in),
    }


class MemoryLifecycleTests(unittest.TestCase):
    def test_expiry_is_null_only_when_pinned(self) -> None:
        self.assertEqual(resolve_expiry(importance=5, tier="core", pinned=False, expires_at=None, now=NOW), (True, None))
        self.assertEqual(
            resolve_expiry(importance=5, tier="working", pinned=True, expires_at=NOW, now=NOW),
            (True, None),
        )
        pinned, expires = resolve_expiry(importance=5, tier="working", pinned=False, expires_at=None, now=NOW)
        self.assertFalse(pinned)
        self.assertEqual(expires, NOW + timedelta(days=7))
        _, long_lived = resolve_expiry(importance=9, tier="working", pinned=False, expires_at=None, now=NOW)
        self.assertEqual(long_lived, NOW + timedelta(days=30))

    def test_importance_is_clamped(self) -> None:
        self.assertEqual(clamp_importance(0), 1)
        self.assertEqual(clamp_importance(42), 10)
        self.assertEqual(clamp_importance("seven"), 5)

    def test_age_label(self) -> None:
        self.assertEqual(age_label(NOW - timedelta(hours=5), NOW), "5h ago")
        self.assertEqual(age_label(NOW - timedelta(days=3), NOW), "3d ago")

    def test_review_prompt_enumerates_candidates(self) -> None:
        long_content = "x" * 500
        prompt = build_review_prompt(
            character_name="Kevin",
            memories=[_memory(1), _memory(2, content=long_content)],
            now=NOW,
        )
        self.assertIn("You are Kevin.", prompt)
        self.assertIn("1. [observation] (1d ago) Memory number 1", prompt)
        self.assertIn("2. [observation] (1d ago) " + "x" * 200 + "\n", prompt)
        self.assertNotIn("x" * 201, prompt)

    def test_keep_never_lowers_importance_or_shortens_expiry(self) -> None:
        memories = [
            _memory(1, importance=5),
            _memory(2, importance=8),
            _memory(3, importance=9, expires_in=timedelta(days=25)),
        ]
        updates = plan_review_updates(
            memories=memories,
            verdicts=[{"index": i, "verdict": "KEEP"} for i in (1, 2, 3)],
            now=NOW,
        )
        by_id = {u.memory_id: u.changes for u in updates}
        self.assertEqual(by_id["mem-1"]["importance"], 6)
        self.assertEqual(by_id["mem-2"]["importance"], 8)
        self.assertEqual(by_id["mem-3"]["importance"], 9)
        self.assertEqual(by_id["mem-1"]["expires_at"], NOW + timedelta(days=14))
        self.assertEqual(by_id["mem-3"]["expires_at"], parse_utc(memories[2]["expires_at"]))

    def test_fade_compresses_and_floors_importance(self) -> None:
        memories = [_memory(1, importance=3), _memory(2, importance=6, content="y" * 90)]
        updates = plan_review_updates(
            memories=memories,
            verdicts=[
                {"index": 1, "verdict": "fade", "compressed": "z" * 150},
                {"index": 2, "verdict": "FADE"},
            ],
            now=NOW,
        )
        first, second = updates[0].changes, updates[1].changes
        self.assertEqual(first["content"], "[Faded] " + "z" * 100)
        self.assertEqual(first["importance"], 3)
        self.assertEqual(first["memory_type"], "faded")
        self.assertEqual(first["expires_at"], NOW + timedelta(days=7))
        self.assertEqual(second["content"], "[Faded] " + "y" * 60 + "...")
        self.assertEqual(second["importance"], 5)

    def test_forget_collapses_expiry_to_an_hour(self) -> None:
        updates = plan_review_updates(
            memories=[_memory(1, expires_in=timedelta(days=20))],
            verdicts=[{"index": 1, "verdict": "FORGET"}],
            now=NOW,
        )
        self.assertEqual(updates[0].changes, {"expires_at": NOW + timedelta(hours=1)})

    def test_bad_verdict_entries_are_ignored(self) -> None:
        updates = plan_review_updates(
            memories=[_memory(1), _memory(2)],
            verdicts=[
                "KEEP",
                {"index": 0, "verdict": "KEEP"},
                {"index": 3, "verdict": "KEEP"},
                {"index": True, "verdict": "KEEP"},
                {"index": 1, "verdict": "CHERISH"},
                {"index": 2, "verdict": "FORGET"},
                {"index": 2, "verdict": "KEEP"},
            ],
            now=NOW,
        )
        self.assertEqual([(u.memory_id, u.verdict) for u in updates], [("mem-2", "FORGET")])


class SweepPlanningTests(unittest.TestCase):
    @staticmethod
    def _window(count: int, speakers: list[str]) -> list[dict]:
        return [{"speaker": speakers[i % len(speakers)], "content": f"line {i}"} for i in range(count)]

    def test_window_guards_run_in_order(self) -> None:
        self.assertEqual(window_guard(self._window(7, ["A", "B", "C"])), "insufficient_messages")
        self.assertEqual(window_guard(self._window(12, ["A", "B"])), "insufficient_speakers")
        self.assertIsNone(window_guard(self._window(8, ["A", "B", "C"])))

    def test_schedule_guard_cooldown_then_cap(self) -> None:
        recent = {"timestamp": iso_utc(NOW - timedelta(minutes=19))}
        stale = {"timestamp": iso_utc(NOW - timedelta(minutes=20))}
        capped = {"date": "2026-03-10", "count": 8}
        yesterday = {"date": "2026-03-09", "count": 8}
        self.assertEqual(schedule_guard(last_sweep=recent, sweep_count=capped, now=NOW), "cooldown")
        self.assertEqual(schedule_guard(last_sweep=stale, sweep_count=capped, now=NOW), "daily_cap_reached")
        self.assertIsNone(schedule_guard(last_sweep=stale, sweep_count=yesterday, now=NOW))
        self.assertIsNone(schedule_guard(last_sweep=None, sweep_count=None, now=NOW))

    def test_counter_resets_on_a_new_day(self) -> None:
        last, count = next_schedule_state(sweep_count={"date": "2026-03-09", "count": 6}, now=NOW)
        self.assertEqual(last, {"timestamp": iso_utc(NOW)})
        self.assertEqual(count, {"date": "2026-03-10", "count": 1})
        _, same_day = next_schedule_state(sweep_count={"date": "2026-03-10", "count": 3}, now=NOW)
        self.assertEqual(same_day["count"], 4)

    def test_window_starts_after_the_last_sweep(self) -> None:
        hour = timedelta(minutes=60)
        self.assertEqual(window_start(last_sweep=None, now=NOW, lookback=hour), NOW - hour)
        recent = {"timestamp": iso_utc(NOW - timedelta(minutes=21))}
        self.assertEqual(
            window_start(last_sweep=recent, now=NOW, lookback=hour),
            NOW - timedelta(minutes=21) + timedelta(microseconds=1),
        )
        old = {"timestamp": iso_utc(NOW - timedelta(hours=5))}
        self.assertEqual(window_start(last_sweep=old, now=NOW, lookback=hour), NOW - hour)

    def test_participants_match_window_spelling(self) -> None:
        self.assertEqual(
            match_participants(["kevin", "NEIV", "Ghost", "Kevin"], ["Kevin", "Neiv", "Asuna"]),
            ["Kevin", "Neiv"],
        )
        self.assertEqual(match_participants("Kevin", ["Kevin"]), [])

    def test_verdict_is_clamped_and_normalized(self) -> None:
        verdict = parse_sweep_verdict(
            {"memorable": "true", "importance": 11, "summary": " a prank ", "participants": ["Kevin"], "type": "heist"},
            speakers=["Kevin", "Neiv", "Asuna"],
        )
        self.assertTrue(verdict.memorable)
        self.assertEqual(verdict.importance, 8)
        self.assertEqual(verdict.summary, "a prank")
        self.assertEqual(verdict.moment_type, "banter")
        self.assertEqual(sweep_expiry(8, NOW), NOW + timedelta(days=14))
        self.assertEqual(sweep_expiry(7, NOW), NOW + timedelta(days=7))
        self.assertEqual(parse_sweep_verdict({"importance": 2}, speakers=[]).importance, 5)
        self.assertFalse(parse_sweep_verdict([{"memorable": True}], speakers=[]).memorable)


if __name__ == "__main__":
    unittest.main()
