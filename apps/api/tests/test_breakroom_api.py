#!/usr/bin/env python3

from __future__ import annotations

import os
import tempfile
import unittest
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[3]
TEST_DB_DIR = tempfile.TemporaryDirectory(dir=ROOT)
os.environ["LOBBY_DB_PATH"] = str(Path(TEST_DB_DIR.name) / "test_breakroom_lobby.db")

from apps.api.lobby_api.main import app
from apps.api.lobby_api.services.breakroom import perform_activity
from apps.api.lobby_api.storage.character_state import ensure_state, get_state
from apps.api.lobby_api.storage.character_state import reset_backend_cache_for_tests as reset_state_backend
from apps.api.lobby_api.storage.memories import list_active_memories
from apps.api.lobby_api.storage.memories import reset_backend_cache_for_tests as reset_memories_backend
from packages.lobby_core.vitals.activities import ActivityCooldownError


NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


class BreakroomApiTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["LOBBY_DB_PATH"] = str(Path(TEST_DB_DIR.name) / f"breakroom-{uuid.uuid4().hex[:8]}.db")
        os.environ.pop("LOBBY_HUMAN_CHARACTERS", None)
        reset_state_backend()
        reset_memories_backend()
        self.client = TestClient(app)

    def _activity(self, **body):
        return self.client.post("/api/v1/breakroom/activities", json=body)

    def test_overview_groups_characters(self) -> None:
        ensure_state(character_name="Kevin", energy=0, patience=60, now=NOW)
        ensure_state(character_name="Neiv", energy=80, patience=0, current_focus="break_room", now=NOW)
        ensure_state(character_name="Asuna", energy=90, patience=90, now=NOW)

        resp = self.client.get("/api/v1/breakroom")
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertEqual(len(payload["characters"]), 3)
        self.assertEqual(payload["exhausted"], ["Kevin"])
        self.assertEqual(payload["done"], ["Neiv"])
        self.assertEqual(sorted(payload["needs_break"]), ["Kevin", "Neiv"])
        self.assertEqual(payload["in_break_room"], ["Neiv"])
        self.assertIn("take_nap", payload["activities"])

    def test_activity_restores_vitals_and_records_memory(self) -> None:
        ensure_state(character_name="Kevin", energy=30, patience=95, current_focus="break_room", now=NOW)

        resp = self._activity(character_name="Kevin", action="take_nap")
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertTrue(payload["ok"])
        self.assertEqual(payload["activity"], "take_nap")
        character = payload["character"]
        self.assertEqual((character["energy"], character["patience"]), (70, 100))
        self.assertEqual(character["mood"], "rested")
        self.assertEqual(character["current_focus"], "the_floor")
        self.assertIn("take_nap", character["activity_log"])
        self.assertIsNotNone(character["last_activity_at"])

        memories = list_active_memories(character_name="Kevin")
        self.assertEqual(len(memories), 1)
        self.assertEqual(memories[0]["memory_type"], "break_room")
        self.assertEqual(memories[0]["importance"], 3)

    def test_second_activity_inside_cooldown_is_429(self) -> None:
        ensure_state(character_name="Kevin", energy=30, patience=30, now=NOW)
        self.assertEqual(self._activity(character_name="Kevin", action="coffee_break").status_code, 200)
        before = get_state(character_name="Kevin")

        resp = self._activity(character_name="Kevin", action="snack_time")
        self.assertEqual(resp.status_code, 429)
        payload = resp.json()
        self.assertGreater(payload["cooldown_remaining_ms"], 0)
        self.assertLessEqual(payload["cooldown_remaining_ms"], 300000)
        self.assertTrue(payload["cooldown_display"])
        self.assertGreaterEqual(int(resp.headers["Retry-After"]), 1)
        self.assertEqual(get_state(character_name="Kevin"), before)

    def test_cooldown_ends_exactly_at_five_minutes(self) -> None:
        ensure_state(character_name="Kevin", energy=10, patience=10, now=NOW)
        perform_activity(character_name="Kevin", action="deep_breath", now=NOW)

        with self.assertRaises(ActivityCooldownError) as raised:
            perform_activity(
                character_name="Kevin",
                action="deep_breath",
                now=NOW + timedelta(minutes=4, seconds=59),
            )
        self.assertEqual(raised.exception.remaining_ms, 1000)

        result = perform_activity(character_name="Kevin", action="deep_breath", now=NOW + timedelta(minutes=5))
        self.assertEqual(result["character"]["patience"], 70)

    def test_unknown_activity_lists_available(self) -> None:
        ensure_state(character_name="Kevin", now=NOW)
        resp = self._activity(character_name="Kevin", action="fight_the_printer")
        self.assertEqual(resp.status_code, 400)
        self.assertIn("pet_the_void", resp.json()["available"])

    def test_unknown_character_is_404(self) -> None:
        resp = self._activity(character_name="Ghost", action="take_nap")
        self.assertEqual(resp.status_code, 404)

    def test_targeted_activity_requires_a_real_target(self) -> None:
        ensure_state(character_name="Kevin", now=NOW)
        self.assertEqual(self._activity(character_name="Kevin", action="check_on_friend").status_code, 400)
        self.assertEqual(
            self._activity(character_name="Kevin", action="check_on_friend", target_name="Kevin").status_code,
            400,
        )
        self.assertEqual(
            self._activity(character_name="Kevin", action="check_on_friend", target_name="Ghost").status_code,
            400,
        )
        self.assertIsNone(get_state(character_name="Kevin")["last_activity_at"])

    def test_check_on_friend_lifts_the_target(self) -> None:
        ensure_state(character_name="Kevin", energy=50, patience=50, now=NOW)
        ensure_state(character_name="Neiv", energy=20, patience=10, mood="exhausted", now=NOW)

        resp = self._activity(character_name="Kevin", action="check_on_friend", target_name="Neiv")
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertEqual(payload["message"], "checked on Neiv")
        self.assertEqual((payload["character"]["energy"], payload["character"]["patience"]), (45, 60))
        target = payload["target"]
        self.assertEqual((target["energy"], target["patience"], target["mood"]), (35, 30, "supported"))
        memory = list_active_memories(character_name="Kevin")[0]
        self.assertEqual(memory["related_characters"], ["Neiv"])

    def test_human_characters_keep_their_location(self) -> None:
        os.environ["LOBBY_HUMAN_CHARACTERS"] = "Vale"
        ensure_state(character_name="Vale", energy=40, patience=40, current_focus="break_room", now=NOW)

        result = perform_activity(character_name="Vale", action="snack_time", now=NOW)
        self.assertTrue(result["character"]["is_human"])
        self.assertEqual(result["character"]["current_focus"], "break_room")


if __name__ == "__main__":
    unittest.main()
