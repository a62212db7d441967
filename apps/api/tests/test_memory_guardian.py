#!/usr/bin/env python3

from __future__ import annotations

import json
import os
import tempfile
import unittest
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[3]
TEST_DB_DIR = tempfile.TemporaryDirectory(dir=ROOT)
os.environ["LOBBY_DB_PATH"] = str(Path(TEST_DB_DIR.name) / "test_memory_guardian.db")

from apps.api.lobby_api.services.memory_guardian import build_life_chapter, run_memory_guardian
from apps.api.lobby_api.storage.character_state import ensure_state
from apps.api.lobby_api.storage.character_state import reset_backend_cache_for_tests as reset_state_backend
from apps.api.lobby_api.storage.llm_control import get_llm_policy, insert_call_log, list_call_logs
from apps.api.lobby_api.storage.llm_control import reset_backend_cache_for_tests as reset_llm_backend
from apps.api.lobby_api.storage.memories import create_memory, get_memory, list_active_memories
from apps.api.lobby_api.storage.memories import reset_backend_cache_for_tests as reset_memories_backend
from packages.lobby_core.llm.evaluator import EvaluationService
from packages.lobby_core.llm.providers import ProviderCompletion
from packages.lobby_core.memory.guardian import (
    chapter_related,
    chapter_tags,
    condense,
    is_fading,
    parse_chapter,
    period_summary,
)


NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
CHAPTER = "I learned the copier is not my enemy. Neiv showed me that patience is a kind of courage."


class MemoryGuardianTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["LOBBY_DB_PATH"] = str(Path(TEST_DB_DIR.name) / f"guardian-{uuid.uuid4().hex[:8]}.db")
        os.environ.pop("LOBBY_HUMAN_CHARACTERS", None)
        reset_memories_backend()
        reset_state_backend()
        reset_llm_backend()
        self.prompts: list[str] = []

    def _evaluator(self, text: str) -> EvaluationService:
        def fake_provider(**kwargs):
            self.prompts.append(kwargs["prompt"])
            return ProviderCompletion(text=text, model_name="openai_compatible:test-model")

        return EvaluationService(
            policy_lookup=get_llm_policy,
            log_sink=insert_call_log,
            provider_invoker=fake_provider,
        )

    def _seed(self, name: str = "Kevin", *, steady: int = 18, fading: int = 4) -> list[dict]:
        for idx in range(steady):
            create_memory(
                character_name=name,
                content=f"{name} steady memory {idx}",
                memory_type="observation",
                importance=8,
                expires_at=NOW + timedelta(days=20),
                now=NOW - timedelta(days=3),
            )
        rows = []
        for idx in range(fading):
            rows.append(
                create_memory(
                    character_name=name,
                    content=f"Neiv helped me unjam the copier on floor {idx} while everyone else just watched",
                    memory_type="observation",
                    importance=5,
                    emotional_tags=["grateful", "relieved"],
                    related_characters=["Asuna"] if idx == 0 else None,
                    now=NOW - timedelta(days=2, hours=idx),
                )
            )
        return rows

    def test_fading_memories_become_a_pinned_life_chapter(self) -> None:
        for name in ("Kevin", "Neiv", "Asuna"):
            ensure_state(character_name=name, now=NOW)
        fading = self._seed()

        result = build_life_chapter(
            "Kevin",
            evaluator=self._evaluator(json.dumps({"chapter": CHAPTER})),
            now=NOW,
        )

        self.assertTrue(result["chapter_created"])
        self.assertEqual((result["working"], result["fading"], result["memories_faded"]), (22, 4, 4))
        self.assertEqual(len(self.prompts), 1)
        self.assertIn("Fading memories:", self.prompts[0])
        self.assertIn("unjam the copier on floor 3", self.prompts[0])
        self.assertNotIn("steady memory", self.prompts[0])

        chapter = get_memory(memory_id=result["memory_id"])
        self.assertEqual(chapter["content"], CHAPTER)
        self.assertEqual(chapter["memory_type"], "life_chapter")
        self.assertEqual(chapter["memory_tier"], "core")
        self.assertTrue(chapter["is_pinned"])
        self.assertIsNone(chapter["expires_at"])
        self.assertEqual(chapter["importance"], 9)
        self.assertEqual(chapter["emotional_tags"], ["grateful", "relieved"])
        self.assertEqual(chapter["related_characters"], ["Neiv", "Asuna"])

        for row in fading:
            condensed = get_memory(memory_id=row["id"])
            self.assertEqual(condensed["content"], row["content"][:50] + "...")
            self.assertEqual(condensed["importance"], 4)

        logs = list_call_logs(task_name="memory_guardian", character_name="Kevin")
        self.assertEqual(len(logs), 1)
        self.assertTrue(logs[0]["success"])

    def test_too_few_working_memories_skips_the_provider(self) -> None:
        self._seed(steady=5, fading=4)
        result = build_life_chapter("Kevin", evaluator=self._evaluator("{}"), now=NOW)

        self.assertFalse(result["chapter_created"])
        self.assertEqual(result["reason"], "insufficient_memories")
        self.assertEqual(self.prompts, [])

    def test_needs_enough_fading_memories(self) -> None:
        self._seed(steady=20, fading=2)
        result = build_life_chapter("Kevin", evaluator=self._evaluator("{}"), now=NOW)

        self.assertFalse(result["chapter_created"])
        self.assertEqual(result["reason"], "insufficient_fading")
        self.assertEqual(result["fading"], 2)
        self.assertEqual(self.prompts, [])

    def test_short_chapter_changes_nothing(self) -> None:
        fading = self._seed()
        result = build_life_chapter(
            "Kevin",
            evaluator=self._evaluator('{"chapter": "It was fine."}'),
            now=NOW,
        )

        self.assertFalse(result["chapter_created"])
        self.assertEqual(result["reason"], "insufficient_chapter")
        for row in fading:
            self.assertEqual(get_memory(memory_id=row["id"]), row)
        chapters = [
            m for m in list_active_memories(character_name="Kevin", now=NOW) if m["memory_type"] == "life_chapter"
        ]
        self.assertEqual(chapters, [])

    def test_unparseable_response_is_reported(self) -> None:
        fading = self._seed()
        result = build_life_chapter("Kevin", evaluator=self._evaluator('{"chapter": "I learned'), now=NOW)

        self.assertFalse(result["chapter_created"])
        self.assertEqual(result["reason"], "parse_failure")
        self.assertEqual(get_memory(memory_id=fading[0]["id"]), fading[0])

    def test_missing_configuration_skips_chapter(self) -> None:
        self._seed()
        evaluator = EvaluationService(
            provider_invoker=lambda **_: self.fail("provider must not be called"),
            configuration_check=lambda tier: "missing_api_key",
        )
        result = build_life_chapter("Kevin", evaluator=evaluator, now=NOW)

        self.assertFalse(result["chapter_created"])
        self.assertTrue(result["skipped"])
        self.assertEqual(result["reason"], "configuration_missing")
        self.assertEqual(result["error_code"], "missing_api_key")

    def test_batch_covers_non_human_characters_only(self) -> None:
        os.environ["LOBBY_HUMAN_CHARACTERS"] = "Vale"
        for name in ("Kevin", "Vale"):
            ensure_state(character_name=name, now=NOW)
            self._seed(name)

        result = run_memory_guardian(evaluator=self._evaluator(json.dumps({"chapter": CHAPTER})), now=NOW)

        self.assertTrue(result["ok"])
        self.assertEqual([r["character"] for r in result["results"]], ["Kevin"])
        self.assertEqual(result["chapters_created"], 1)
        self.assertEqual(result["memories_faded"], 4)


class ChapterRuleTests(unittest.TestCase):
    def test_low_importance_or_near_expiry_counts_as_fading(self) -> None:
        self.assertTrue(is_fading({"importance": 6, "expires_at": None}, NOW))
        self.assertTrue(is_fading({"importance": 8, "expires_at": "2026-03-16T15:00:00Z"}, NOW))
        self.assertFalse(is_fading({"importance": 8, "expires_at": "2026-03-30T15:00:00Z"}, NOW))
        self.assertFalse(is_fading({"importance": 7, "expires_at": None}, NOW))

    def test_chapter_payload_needs_real_text(self) -> None:
        self.assertEqual(parse_chapter({"chapter": f"  {CHAPTER}  "}), CHAPTER)
        self.assertIsNone(parse_chapter({"chapter": "short"}))
        self.assertIsNone(parse_chapter([CHAPTER]))

    def test_tags_and_related_names(self) -> None:
        memories = [
            {"content": "Kevin and Neiv fixed the printer", "emotional_tags": ["proud", "tired"]},
            {"content": "Asuna laughed", "emotional_tags": ["tired", "amused"], "related_characters": ["Vale"]},
        ]
        self.assertEqual(chapter_tags(memories), ["proud", "tired", "amused"])
        self.assertEqual(chapter_tags([{"content": "x"}]), ["reflective"])
        self.assertEqual(
            chapter_related(memories, known_names=["Kevin", "Neiv", "Asuna"], owner="Kevin"),
            ["Neiv", "Vale", "Asuna"],
        )

    def test_condense_and_period(self) -> None:
        self.assertEqual(condense("x" * 60), "x" * 50 + "...")
        self.assertEqual(condense("short"), "short")
        self.assertEqual(
            period_summary([{"created_at": "2026-03-01T10:00:00Z"}, {"created_at": "2026-03-05T09:00:00Z"}]),
            "4 days (2026-03-01 to 2026-03-05)",
        )
        self.assertEqual(period_summary([]), "an unknown stretch of time")


if __name__ == "__main__":
    unittest.main()
