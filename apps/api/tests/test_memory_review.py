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
os.environ["LOBBY_DB_PATH"] = str(Path(TEST_DB_DIR.name) / "test_memory_review.db")

from apps.api.lobby_api.services.memory_review import review_character_memories, run_memory_reviews
from apps.api.lobby_api.storage.character_state import ensure_state
from apps.api.lobby_api.storage.character_state import reset_backend_cache_for_tests as reset_state_backend
from apps.api.lobby_api.storage.llm_control import get_llm_policy, insert_call_log, list_call_logs
from apps.api.lobby_api.storage.llm_control import reset_backend_cache_for_tests as reset_llm_backend
from apps.api.lobby_api.storage.memories import create_memory, get_memory, list_reviewable_memories
from apps.api.lobby_api.storage.memories import reset_backend_cache_for_tests as reset_memories_backend
from packages.lobby_core.clock import parse_utc
from packages.lobby_core.llm.evaluator import EvaluationService
from packages.lobby_core.llm.providers import ProviderCompletion, ProviderExecutionError


NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


class MemoryReviewTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["LOBBY_DB_PATH"] = str(Path(TEST_DB_DIR.name) / f"review-{uuid.uuid4().hex[:8]}.db")
        os.environ.pop("LOBBY_HUMAN_CHARACTERS", None)
        reset_memories_backend()
        reset_state_backend()
        reset_llm_backend()
        self.prompts: list[str] = []

    def _evaluator(self, text: str = "[]", *, error: Exception | None = None) -> EvaluationService:
        def fake_provider(**kwargs):
            self.prompts.append(kwargs["prompt"])
            if error is not None:
                raise error
            return ProviderCompletion(text=text, model_name="openai_compatible:test-model")

        return EvaluationService(
            policy_lookup=get_llm_policy,
            log_sink=insert_call_log,
            provider_invoker=fake_provider,
        )

    def _seed(self, name: str = "Kevin", count: int = 3) -> list[dict]:
        rows = []
        for idx in range(count):
            rows.append(
                create_memory(
                    character_name=name,
                    content=f"{name} memory {idx}: the vending machine ate another dollar",
                    memory_type="observation",
                    importance=5,
                    now=NOW - timedelta(days=5 - idx),
                )
            )
        return rows

    def test_verdicts_are_applied_per_memory(self) -> None:
        seeded = self._seed()
        verdicts = [
            {"index": 1, "verdict": "KEEP"},
            {"index": 2, "verdict": "FADE", "compressed": "Vending machine grudge"},
            {"index": 3, "verdict": "FORGET"},
        ]
        result = review_character_memories(
            "Kevin",
            evaluator=self._evaluator("Here:\n" + json.dumps(verdicts)),
            now=NOW,
        )

        self.assertTrue(result["reviewed"])
        self.assertEqual(
            (result["total"], result["kept"], result["faded"], result["forgotten"], result["failed"]),
            (3, 1, 1, 1, 0),
        )
        self.assertEqual(len(self.prompts), 1)
        self.assertIn("1. [observation] (5d ago)", self.prompts[0])

        kept = get_memory(memory_id=seeded[0]["id"])
        self.assertEqual(kept["importance"], 6)
        self.assertEqual(parse_utc(kept["expires_at"]), NOW + timedelta(days=14))

        faded = get_memory(memory_id=seeded[1]["id"])
        self.assertEqual(faded["content"], "[Faded] Vending machine grudge")
        self.assertEqual(faded["memory_type"], "faded")
        self.assertEqual(faded["importance"], 4)

        forgotten = get_memory(memory_id=seeded[2]["id"])
        self.assertLessEqual(parse_utc(forgotten["expires_at"]), NOW + timedelta(hours=1))
        remaining = list_reviewable_memories(character_name="Kevin", now=NOW + timedelta(hours=2), limit=12)
        self.assertNotIn(seeded[2]["id"], [row["id"] for row in remaining])

        logs = list_call_logs(task_name="memory_review", character_name="Kevin")
        self.assertEqual(len(logs), 1)
        self.assertTrue(logs[0]["success"])

    def test_too_few_candidates_skips_the_provider(self) -> None:
        self._seed(count=2)
        create_memory(
            character_name="Kevin",
            content="First day at the office",
            memory_type="milestone",
            tier="core",
            now=NOW - timedelta(days=30),
        )
        result = review_character_memories("Kevin", evaluator=self._evaluator(), now=NOW)

        self.assertFalse(result["reviewed"])
        self.assertEqual(result["reason"], "insufficient_memories")
        self.assertEqual(self.prompts, [])

    def test_unparseable_response_mutates_nothing(self) -> None:
        seeded = self._seed()
        result = review_character_memories(
            "Kevin",
            evaluator=self._evaluator('[{"index": 1, "verdict": "KEEP"'),
            now=NOW,
        )

        self.assertFalse(result["reviewed"])
        self.assertEqual(result["reason"], "parse_failure")
        for row in seeded:
            self.assertEqual(get_memory(memory_id=row["id"]), row)
        logs = list_call_logs(task_name="memory_review")
        self.assertFalse(logs[0]["success"])

    def test_upstream_failure_is_reported_not_raised(self) -> None:
        self._seed()
        result = review_character_memories(
            "Kevin",
            evaluator=self._evaluator(error=ProviderExecutionError("down", error_code="http_502")),
            now=NOW,
        )
        self.assertFalse(result["reviewed"])
        self.assertEqual(result["reason"], "upstream_unavailable")
        self.assertEqual(result["error_code"], "http_502")

    def test_missing_configuration_skips_review(self) -> None:
        self._seed()
        evaluator = EvaluationService(
            provider_invoker=lambda **_: self.fail("provider must not be called"),
            configuration_check=lambda tier: "missing_api_key",
        )
        result = review_character_memories("Kevin", evaluator=evaluator, now=NOW)

        self.assertFalse(result["reviewed"])
        self.assertTrue(result["skipped"])
        self.assertEqual(result["reason"], "configuration_missing")

        batch = run_memory_reviews(evaluator=evaluator, now=NOW)
        self.assertTrue(batch["skipped"])

    def test_batch_covers_non_human_characters_only(self) -> None:
        os.environ["LOBBY_HUMAN_CHARACTERS"] = "Asuna"
        for name in ("Kevin", "Neiv", "Asuna"):
            ensure_state(character_name=name, now=NOW)
            self._seed(name)

        result = run_memory_reviews(evaluator=self._evaluator("[]"), now=NOW)

        self.assertTrue(result["ok"])
        self.assertEqual(sorted(r["character"] for r in result["results"]), ["Kevin", "Neiv"])
        self.assertEqual(result["reviewed"], 2)
        self.assertEqual(len(self.prompts), 2)


if __name__ == "__main__":
    unittest.main()
