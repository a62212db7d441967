#!/usr/bin/env python3

from __future__ import annotations

import os
import tempfile
import unittest
import uuid
from pathlib import Path

from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[3]
TEST_DB_DIR = tempfile.TemporaryDirectory(dir=ROOT)
os.environ["LOBBY_DB_PATH"] = str(Path(TEST_DB_DIR.name) / "test_llm_lobby.db")

from apps.api.lobby_api.main import app
from apps.api.lobby_api.storage.llm_control import insert_call_log
from apps.api.lobby_api.storage.llm_control import reset_backend_cache_for_tests as reset_llm_backend
from apps.api.lobby_api.storage.lobby_settings import reset_backend_cache_for_tests as reset_settings_backend


class LlmApiTests(unittest.TestCase):
    def setUp(self) -> None:
        os.environ["LOBBY_DB_PATH"] = str(Path(TEST_DB_DIR.name) / f"llm-{uuid.uuid4().hex[:8]}.db")
        reset_llm_backend()
        reset_settings_backend()
        self.client = TestClient(app)

    def test_default_policies_are_exposed(self) -> None:
        resp = self.client.get("/api/v1/llm/policies")
        self.assertEqual(resp.status_code, 200)
        payload = resp.json()
        self.assertGreaterEqual(payload["count"], 2)
        review_policy = next(p for p in payload["policies"] if p["task_name"] == "memory_review")
        self.assertEqual(review_policy["model_tier"], "cheap")
        self.assertNotIn("fallback_chain", review_policy)

    def test_unknown_task_gets_a_default_policy(self) -> None:
        resp = self.client.get("/api/v1/llm/policies/gossip_digest")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["policy"]["task_name"], "gossip_digest")

    def test_upsert_policy_then_get(self) -> None:
        put = self.client.put(
            "/api/v1/llm/policies/conversation_sweep",
            json={
                "model_tier": "fast",
                "max_input_tokens": 4000,
                "max_output_tokens": 160,
                "temperature": 0.1,
                "timeout_ms": 9000,
            },
        )
        self.assertEqual(put.status_code, 200)
        self.assertEqual(put.json()["policy"]["model_tier"], "fast")

        fetched = self.client.get("/api/v1/llm/policies/conversation_sweep").json()["policy"]
        self.assertEqual(fetched["model_tier"], "fast")
        self.assertEqual(int(fetched["max_input_tokens"]), 4000)

        listed = self.client.get("/api/v1/llm/policies").json()["policies"]
        sweep_rows = [p for p in listed if p["task_name"] == "conversation_sweep"]
        self.assertEqual(len(sweep_rows), 1)
        self.assertEqual(sweep_rows[0]["timeout_ms"], 9000)

    def test_invalid_tier_is_rejected(self) -> None:
        resp = self.client.put(
            "/api/v1/llm/policies/memory_review",
            json={
                "model_tier": "heuristic",
                "max_input_tokens": 100,
                "max_output_tokens": 10,
                "temperature": 0.2,
                "timeout_ms": 1000,
            },
        )
        self.assertEqual(resp.status_code, 422)

    def test_logs_can_be_filtered(self) -> None:
        for character_name, task_name, success in (
            ("Kevin", "memory_review", True),
            ("Neiv", "memory_review", False),
            (None, "conversation_sweep", True),
        ):
            insert_call_log(
                {
                    "id": str(uuid.uuid4()),
                    "character_name": character_name,
                    "task_name": task_name,
                    "model_name": "openai_compatible:test-model",
                    "prompt_tokens": 120,
                    "completion_tokens": 30,
                    "latency_ms": 420,
                    "success": success,
                    "error_code": None if success else "parse_failure",
                }
            )

        every = self.client.get("/api/v1/llm/logs").json()
        self.assertEqual(every["count"], 3)

        reviews = self.client.get("/api/v1/llm/logs", params={"task_name": "memory_review"}).json()
        self.assertEqual(reviews["count"], 2)

        neiv = self.client.get("/api/v1/llm/logs", params={"character_name": "Neiv"}).json()
        self.assertEqual(neiv["count"], 1)
        self.assertFalse(neiv["logs"][0]["success"])
        self.assertEqual(neiv["logs"][0]["error_code"], "parse_failure")


if __name__ == "__main__":
    unittest.main()
