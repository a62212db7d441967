#!/usr/bin/env python3

from __future__ import annotations

import unittest

from packages.lobby_core.llm.evaluator import (
    CONFIGURATION_MISSING,
    PARSE_FAILURE,
    UPSTREAM_UNAVAILABLE,
    EvaluationService,
)
from packages.lobby_core.llm.policy import TaskPolicy
from packages.lobby_core.llm.providers import (
    ProviderCompletion,
    ProviderExecutionError,
    ProviderUnavailableError,
)


class EvaluationServiceTests(unittest.TestCase):
    @staticmethod
    def _policy(task_name: str, model_tier: str = "cheap", max_input_tokens: int = 640) -> TaskPolicy:
        return TaskPolicy(
            task_name=task_name,
            model_tier=model_tier,
            max_input_tokens=max_input_tokens,
            max_output_tokens=80,
            temperature=0.2,
            timeout_ms=1200,
        )

    def test_successful_call_parses_payload_and_logs(self) -> None:
        calls: list[dict] = []
        logs: list[dict] = []

        def fake_provider(**kwargs):
            calls.append(kwargs)
            return ProviderCompletion(
                text='```json\n{"memorable": false}\n```',
                model_name="openai_compatible:test-model",
                prompt_tokens=12,
                completion_tokens=5,
            )

        service = EvaluationService(
            policy_lookup=lambda _: self._policy("conversation_sweep", model_tier="fast"),
            log_sink=logs.append,
            provider_invoker=fake_provider,
        )
        result = service.evaluate(task_name="conversation_sweep", prompt="judge this", expect="object")

        self.assertTrue(result.ok)
        self.assertEqual(result.payload, {"memorable": False})
        self.assertEqual(len(calls), 1)
        self.assertEqual(calls[0]["tier"], "fast")
        self.assertEqual(calls[0]["max_output_tokens"], 80)
        self.assertTrue(logs[-1]["success"])
        self.assertEqual(logs[-1]["model_name"], "openai_compatible:test-model")
        self.assertEqual(logs[-1]["prompt_tokens"], 12)

    def test_unavailable_provider_is_configuration_missing(self) -> None:
        logs: list[dict] = []

        def fake_provider(**kwargs):
            raise ProviderUnavailableError("missing configuration", error_code="missing_api_key")

        service = EvaluationService(
            policy_lookup=lambda _: self._policy("memory_review"),
            log_sink=logs.append,
            provider_invoker=fake_provider,
        )
        result = service.evaluate(task_name="memory_review", prompt="review", expect="array")

        self.assertFalse(result.ok)
        self.assertEqual(result.error_kind, CONFIGURATION_MISSING)
        self.assertEqual(result.error_code, "missing_api_key")
        self.assertFalse(logs[-1]["success"])
        self.assertEqual(logs[-1]["error_code"], "missing_api_key")

    def test_execution_error_is_upstream_unavailable(self) -> None:
        def fake_provider(**kwargs):
            raise ProviderExecutionError("boom", error_code="provider_http_503")

        service = EvaluationService(provider_invoker=fake_provider)
        result = service.evaluate(task_name="memory_review", prompt="review", expect="array")

        self.assertFalse(result.ok)
        self.assertEqual(result.error_kind, UPSTREAM_UNAVAILABLE)
        self.assertEqual(result.error_code, "provider_http_503")

    def test_unexpected_exception_is_folded_into_result(self) -> None:
        def fake_provider(**kwargs):
            raise TimeoutError("socket timed out")

        service = EvaluationService(provider_invoker=fake_provider)
        result = service.evaluate(task_name="memory_review", prompt="review")

        self.assertFalse(result.ok)
        self.assertEqual(result.error_kind, UPSTREAM_UNAVAILABLE)
        self.assertEqual(result.error_code, "provider_exception:TimeoutError")

    def test_unparseable_output_is_parse_failure(self) -> None:
        logs: list[dict] = []

        def fake_provider(**kwargs):
            return ProviderCompletion(text="I think they should keep most of them.", model_name="m")

        service = EvaluationService(log_sink=logs.append, provider_invoker=fake_provider)
        result = service.evaluate(task_name="memory_review", prompt="review", expect="array")

        self.assertFalse(result.ok)
        self.assertEqual(result.error_kind, PARSE_FAILURE)
        self.assertEqual(result.error_code, "no_json_span")
        self.assertEqual(result.raw_text, "I think they should keep most of them.")
        self.assertFalse(logs[-1]["success"])

    def test_prompt_is_trimmed_to_input_budget(self) -> None:
        seen: list[str] = []

        def fake_provider(**kwargs):
            seen.append(kwargs["prompt"])
            return ProviderCompletion(text="[]", model_name="m")

        service = EvaluationService(
            policy_lookup=lambda _: self._policy("memory_review", max_input_tokens=50),
            provider_invoker=fake_provider,
        )
        result = service.evaluate(task_name="memory_review", prompt="x" * 4000, expect="array")

        self.assertTrue(result.ok)
        self.assertTrue(result.prompt_trimmed)
        self.assertLess(len(seen[0]), 4000)

    def test_log_sink_failure_does_not_fail_the_call(self) -> None:
        def broken_sink(_: dict) -> None:
            raise RuntimeError("database is locked")

        service = EvaluationService(
            log_sink=broken_sink,
            provider_invoker=lambda **_: ProviderCompletion(text='{"memorable": false}', model_name="m"),
        )
        result = service.evaluate(task_name="conversation_sweep", prompt="judge")
        self.assertTrue(result.ok)

    def test_configuration_check_reports_by_policy_tier(self) -> None:
        checked: list[str] = []

        def check(tier: str):
            checked.append(tier)
            return "missing_model" if tier == "strong" else None

        service = EvaluationService(
            policy_lookup=lambda name: self._policy(name, model_tier="strong"),
            provider_invoker=lambda **_: ProviderCompletion(text="{}", model_name="m"),
            configuration_check=check,
        )
        self.assertEqual(service.configuration_error("memory_review"), "missing_model")
        self.assertEqual(checked, ["strong"])

    def test_injected_invoker_skips_environment_check(self) -> None:
        service = EvaluationService(provider_invoker=lambda **_: ProviderCompletion(text="{}", model_name="m"))
        self.assertIsNone(service.configuration_error("memory_review"))


if __name__ == "__main__":
    unittest.main()
