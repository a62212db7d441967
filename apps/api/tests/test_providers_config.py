#!/usr/bin/env python3

from __future__ import annotations

import io
import json
import os
import unittest
from unittest import mock

from packages.lobby_core.llm.providers import (
    DEFAULT_MODEL_BY_TIER,
    ProviderExecutionError,
    ProviderUnavailableError,
    _tier_provider_config,
    complete_prompt,
    configuration_error,
)


class _FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class ProviderConfigTests(unittest.TestCase):
    _env_keys = (
        "LOBBY_LLM_MODEL",
        "LOBBY_LLM_STRONG_MODEL",
        "LOBBY_LLM_FAST_MODEL",
        "LOBBY_LLM_CHEAP_MODEL",
        "LOBBY_LLM_PROVIDER",
        "LOBBY_LLM_STRONG_PROVIDER",
        "LOBBY_LLM_FAST_PROVIDER",
        "LOBBY_LLM_CHEAP_PROVIDER",
        "LOBBY_LLM_BASE_URL",
        "LOBBY_LLM_STRONG_BASE_URL",
        "LOBBY_LLM_FAST_BASE_URL",
        "LOBBY_LLM_CHEAP_BASE_URL",
        "LOBBY_LLM_API_KEY",
        "LOBBY_LLM_STRONG_API_KEY",
        "LOBBY_LLM_FAST_API_KEY",
        "LOBBY_LLM_CHEAP_API_KEY",
        "LOBBY_LLM_ALLOW_EMPTY_API_KEY",
        "OPENAI_API_KEY",
    )

    def setUp(self) -> None:
        self._env_backup = {k: os.environ.get(k) for k in self._env_keys}
        for key in self._env_keys:
            os.environ.pop(key, None)

    def tearDown(self) -> None:
        for key, value in self._env_backup.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def test_default_models_follow_tier_mapping(self) -> None:
        os.environ["LOBBY_LLM_ALLOW_EMPTY_API_KEY"] = "1"

        for tier in ("strong", "fast", "cheap"):
            self.assertEqual(_tier_provider_config(tier).model, DEFAULT_MODEL_BY_TIER[tier])

    def test_tier_specific_model_override_precedence(self) -> None:
        os.environ["LOBBY_LLM_ALLOW_EMPTY_API_KEY"] = "1"
        os.environ["LOBBY_LLM_MODEL"] = "global-model"
        os.environ["LOBBY_LLM_FAST_MODEL"] = "fast-tier-model"

        self.assertEqual(_tier_provider_config("fast").model, "fast-tier-model")
        self.assertEqual(_tier_provider_config("cheap").model, "global-model")

    def test_missing_api_key_is_rejected_by_default(self) -> None:
        with self.assertRaises(ProviderUnavailableError) as raised:
            _tier_provider_config("strong")
        self.assertEqual(raised.exception.error_code, "missing_api_key")
        self.assertEqual(configuration_error("strong"), "missing_api_key")

    def test_openai_key_is_a_fallback(self) -> None:
        os.environ["OPENAI_API_KEY"] = "sk-test"
        self.assertIsNone(configuration_error("cheap"))
        self.assertEqual(_tier_provider_config("cheap").api_key, "sk-test")

    def test_unsupported_provider(self) -> None:
        os.environ["LOBBY_LLM_API_KEY"] = "sk-test"
        os.environ["LOBBY_LLM_CHEAP_PROVIDER"] = "carrier_pigeon"
        self.assertEqual(configuration_error("cheap"), "unsupported_provider")
        self.assertIsNone(configuration_error("fast"))

    def test_complete_prompt_returns_raw_text_and_usage(self) -> None:
        os.environ["LOBBY_LLM_API_KEY"] = "sk-test"
        os.environ["LOBBY_LLM_BASE_URL"] = "http://localhost:9999/v1/"
        envelope = {
            "model": "test-model",
            "choices": [{"message": {"content": '  [{"index": 1, "verdict": "KEEP"}]  '}}],
            "usage": {"prompt_tokens": 40, "completion_tokens": 9},
        }
        captured = {}

        def fake_urlopen(req, timeout):
            captured["url"] = req.full_url
            captured["body"] = json.loads(req.data.decode("utf-8"))
            captured["timeout"] = timeout
            return _FakeResponse(json.dumps(envelope).encode("utf-8"))

        with mock.patch("packages.lobby_core.llm.providers.request.urlopen", side_effect=fake_urlopen):
            completion = complete_prompt(
                tier="cheap",
                prompt="review these",
                temperature=0.3,
                max_output_tokens=120,
                timeout_ms=2500,
            )

        self.assertEqual(captured["url"], "http://localhost:9999/v1/chat/completions")
        self.assertEqual(captured["body"]["max_tokens"], 120)
        self.assertAlmostEqual(captured["timeout"], 2.5)
        self.assertEqual(completion.text, '[{"index": 1, "verdict": "KEEP"}]')
        self.assertEqual(completion.model_name, "test-model")
        self.assertEqual(completion.prompt_tokens, 40)
        self.assertEqual(completion.completion_tokens, 9)

    def test_envelope_without_choices_is_execution_error(self) -> None:
        os.environ["LOBBY_LLM_API_KEY"] = "sk-test"

        with mock.patch(
            "packages.lobby_core.llm.providers.request.urlopen",
            return_value=_FakeResponse(b'{"choices": []}'),
        ):
            with self.assertRaises(ProviderExecutionError) as raised:
                complete_prompt(
                    tier="cheap",
                    prompt="review",
                    temperature=0.2,
                    max_output_tokens=50,
                    timeout_ms=1000,
                )
        self.assertEqual(raised.exception.error_code, "missing_choices")


if __name__ == "__main__":
    unittest.main()
