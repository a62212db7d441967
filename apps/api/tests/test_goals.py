#!/usr/bin/env python3

from __future__ import annotations

import os
import tempfile
import unittest
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[3]
TEST_DB_DIR = tempfile.TemporaryDirectory(dir=ROOT)
os.environ["LOBBY_DB_PATH"] = str(Path(TEST_DB_DIR.name) / "test_goals.db")

from apps.api.lobby_api.storage.goals import (
    complete_goal,
    create_goal,
    fail_goal,
    get_goal,
    has_active_want_mentioning,
    list_goals,
    update_progress,
)
from apps.api.lobby_api.storage.goals import reset_backend_cache_for_tests as reset_goals_backend


NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


class GoalStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["LOBBY_DB_PATH"] = str(Path(TEST_DB_DIR.name) / f"goals-{uuid.uuid4().hex[:8]}.db")
        reset_goals_backend()

    def test_new_goal_supersedes_active_goal_in_scope(self) -> None:
        first = create_goal(character_name="Kevin", goal_text="Fix the copier", now=NOW - timedelta(hours=1))
        second = create_goal(character_name="Kevin", goal_text="Win the chili cook-off", now=NOW)

        superseded = get_goal(goal_id=first["id"])
        self.assertEqual(superseded["status"], "failed")
        self.assertEqual(superseded["fail_reason"], "superseded by new goal")
        self.assertEqual(second["status"], "active")
        self.assertEqual(second["priority"], 5)
        self.assertEqual([g["id"] for g in list_goals(character_name="Kevin")], [second["id"]])

    def test_wants_in_distinct_scopes_coexist(self) -> None:
        create_goal(character_name="Kevin", goal_text="Fix the copier", now=NOW)
        create_goal(character_name="Kevin", goal_text="Avoid Neiv", goal_type="want", scope="want:Neiv", now=NOW)
        create_goal(character_name="Kevin", goal_text="Thank Asuna", goal_type="want", scope="want:Asuna", now=NOW)
        create_goal(character_name="Neiv", goal_text="Fix the copier first", now=NOW)

        self.assertEqual(len(list_goals(character_name="Kevin")), 3)
        wants = list_goals(character_name="Kevin", goal_type="want")
        self.assertEqual({w["scope"] for w in wants}, {"want:Neiv", "want:Asuna"})
        self.assertTrue(all(w["priority"] == 2 for w in wants))
        self.assertTrue(has_active_want_mentioning(character_name="Kevin", text="neiv"))
        self.assertFalse(has_active_want_mentioning(character_name="Kevin", text="copier"))
        self.assertFalse(has_active_want_mentioning(character_name="Kevin", text=""))

    def test_progress_is_clamped_and_completes_at_100(self) -> None:
        goal = create_goal(character_name="Kevin", goal_text="Organize the supply closet", now=NOW)

        self.assertEqual(update_progress(goal_id=goal["id"], progress=-20, now=NOW)["progress"], 0)
        halfway = update_progress(goal_id=goal["id"], progress=55, now=NOW)
        self.assertEqual((halfway["progress"], halfway["status"]), (55, "active"))

        done = update_progress(goal_id=goal["id"], progress=140, now=NOW)
        self.assertEqual((done["progress"], done["status"]), (100, "completed"))
        self.assertEqual(list_goals(character_name="Kevin"), [])
        self.assertEqual(len(list_goals(character_name="Kevin", active_only=False)), 1)

    def test_terminal_goals_do_not_change(self) -> None:
        goal = create_goal(character_name="Kevin", goal_text="Learn everyone's coffee order", now=NOW)
        failed = fail_goal(goal_id=goal["id"], reason="gave up", now=NOW)
        self.assertEqual((failed["status"], failed["fail_reason"]), ("failed", "gave up"))

        self.assertEqual(complete_goal(goal_id=goal["id"], now=NOW)["status"], "failed")
        self.assertEqual(update_progress(goal_id=goal["id"], progress=80, now=NOW)["progress"], 0)
        self.assertIsNone(complete_goal(goal_id="missing", now=NOW))

    def test_unknown_goal_type_falls_back_to_goal(self) -> None:
        goal = create_goal(character_name="Kevin", goal_text="Nap", goal_type="dream", now=NOW)
        self.assertEqual((goal["goal_type"], goal["scope"]), ("goal", "goal"))


if __name__ == "__main__":
    unittest.main()
