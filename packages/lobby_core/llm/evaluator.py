"""Policy-aware Evaluation Service with call logging hooks.

One ``evaluate`` call makes at most one provider request. Failures are
folded into the returned ``EvaluationResult``; nothing is raised to the
caller and nothing is retried, the next scheduled run is the retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from time import perf_counter
from typing import Any, Callable, Optional
import logging
import uuid

from .json_extract import EvaluationParseError, parse_json_payload
from .policy import TaskPolicy, default_policy_for_task, trim_prompt_to_budget
from .providers import (
    ProviderCompletion,
    ProviderExecutionError,
    ProviderUnavailableError,
    complete_prompt,
    configuration_error,
)


logger = logging.getLogger("lobby_core.llm.evaluator")

PolicyLookup = Callable[[str], TaskPolicy]
LogSink = Callable[[dict[str, Any]], None]
ProviderInvoker = Callable[..., ProviderCompletion]
ConfigurationCheck = Callable[[str], Optional[str]]

CONFIGURATION_MISSING = "configuration_missing"
UPSTREAM_UNAVAILABLE = "upstream_unavailable"
PARSE_FAILURE = "parse_failure"


@dataclass(frozen=True)
class EvaluationResult:
    task_name: str
    ok: bool
    payload: Any = None
    error_kind: str | None = None
    error_code: str | None = None
    raw_text: str = ""
    model_name: str | None = None
    latency_ms: int = 0
    prompt_trimmed: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "ok": self.ok,
            "payload": self.payload,
            "error_kind": self.error_kind,
            "error_code": self.error_code,
            "model_name": self.model_name,
            "latency_ms": self.latency_ms,
            "prompt_trimmed": self.prompt_trimmed,
        }


class EvaluationService:
    """Runs evaluation prompts under explicit task policies."""

    def __init__(
        self,
        *,
        policy_lookup: PolicyLookup | None = None,
        log_sink: LogSink | None = None,
        provider_invoker: ProviderInvoker | None = None,
        configuration_check: ConfigurationCheck | None = None,
    ) -> None:
        self._policy_lookup = policy_lookup or default_policy_for_task
        self._log_sink = log_sink
        self._provider_invoker = provider_invoker or complete_prompt
        if configuration_check is None and provider_invoker is None:
            configuration_check = configuration_error
        self._configuration_check = configuration_check

    def _policy(self, task_name: str) -> TaskPolicy:
        try:
            policy = self._policy_lookup(task_name)
        except Exception as exc:
            logger.warning("[EVAL] Policy lookup failed for '%s': %s", task_name, exc)
            policy = None
        if not isinstance(policy, TaskPolicy):
            policy = default_policy_for_task(task_name)
        return policy

    def configuration_error(self, task_name: str) -> str | None:
        """Error code when the task cannot reach a provider, else None."""
        if self._configuration_check is None:
            return None
        return self._configuration_check(self._policy(task_name).model_tier)

    def evaluate(
        self,
        *,
        task_name: str,
        prompt: str,
        expect: str = "object",
        character_name: str | None = None,
    ) -> EvaluationResult:
        policy = self._policy(task_name)
        bounded_prompt, trimmed, prompt_tokens = trim_prompt_to_budget(prompt, policy.max_input_tokens)
        start = perf_counter()
        try:
            completion = self._provider_invoker(
                tier=policy.model_tier,
                prompt=bounded_prompt,
                temperature=policy.temperature,
                max_output_tokens=policy.max_output_tokens,
                timeout_ms=policy.timeout_ms,
            )
        except ProviderUnavailableError as exc:
            return self._failure(
                policy=policy,
                character_name=character_name,
                error_kind=CONFIGURATION_MISSING,
                error_code=exc.error_code,
                model_name=exc.model_name,
                prompt_tokens=prompt_tokens,
                start=start,
                trimmed=trimmed,
            )
        except ProviderExecutionError as exc:
            return self._failure(
                policy=policy,
                character_name=character_name,
                error_kind=UPSTREAM_UNAVAILABLE,
                error_code=exc.error_code,
                model_name=exc.model_name,
                prompt_tokens=prompt_tokens,
                start=start,
                trimmed=trimmed,
            )
        except Exception as exc:
            return self._failure(
                policy=policy,
                character_name=character_name,
                error_kind=UPSTREAM_UNAVAILABLE,
                error_code=f"provider_exception:{exc.__class__.__name__}",
                model_name=None,
                prompt_tokens=prompt_tokens,
                start=start,
                trimmed=trimmed,
            )

        latency_ms = int((perf_counter() - start) * 1000)
        text = str(completion.text or "")
        completion_tokens = int(
            completion.completion_tokens if completion.completion_tokens is not None else max(1, len(text) // 4)
        )
        try:
            payload = parse_json_payload(text, expect=expect)
        except EvaluationParseError as exc:
            logger.info("[EVAL] %s returned unparseable output (%s): %s", task_name, exc.error_code, text[:100])
            self._emit_log(
                character_name=character_name,
                task_name=task_name,
                model_name=completion.model_name,
                prompt_tokens=int(completion.prompt_tokens or prompt_tokens),
                completion_tokens=completion_tokens,
                latency_ms=latency_ms,
                success=False,
                error_code=exc.error_code,
            )
            return EvaluationResult(
                task_name=task_name,
                ok=False,
                error_kind=PARSE_FAILURE,
                error_code=exc.error_code,
                raw_text=text,
                model_name=completion.model_name,
                latency_ms=latency_ms,
                prompt_trimmed=trimmed,
            )

        self._emit_log(
            character_name=character_name,
            task_name=task_name,
            model_name=completion.model_name,
            prompt_tokens=int(completion.prompt_tokens or prompt_tokens),
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            success=True,
            error_code=None,
        )
        return EvaluationResult(
            task_name=task_name,
            ok=True,
            payload=payload,
            raw_text=text,
            model_name=completion.model_name,
            latency_ms=latency_ms,
            prompt_trimmed=trimmed,
        )

    def _failure(
        self,
        *,
        policy: TaskPolicy,
        character_name: str | None,
        error_kind: str,
        error_code: str,
        model_name: str | None,
        prompt_tokens: int,
        start: float,
        trimmed: bool,
    ) -> EvaluationResult:
        latency_ms = int((perf_counter() - start) * 1000)
        logger.warning("[EVAL] %s failed (%s: %s)", policy.task_name, error_kind, error_code)
        self._emit_log(
            character_name=character_name,
            task_name=policy.task_name,
            model_name=model_name or f"{policy.model_tier}:provider",
            prompt_tokens=prompt_tokens,
            completion_tokens=0,
            latency_ms=latency_ms,
            success=False,
            error_code=error_code,
        )
        return EvaluationResult(
            task_name=policy.task_name,
            ok=False,
            error_kind=error_kind,
            error_code=error_code,
            model_name=model_name,
            latency_ms=latency_ms,
            prompt_trimmed=trimmed,
        )

    def _emit_log(
        self,
        *,
        character_name: str | None,
        task_name: str,
        model_name: str,
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: int,
        success: bool,
        error_code: str | None,
    ) -> None:
        if not self._log_sink:
            return
        try:
            self._log_sink(
                {
                    "id": str(uuid.uuid4()),
                    "character_name": character_name,
                    "task_name": task_name,
                    "model_name": model_name,
                    "prompt_tokens": int(prompt_tokens),
                    "completion_tokens": int(completion_tokens),
                    "latency_ms": int(latency_ms),
                    "success": bool(success),
                    "error_code": error_code,
                }
            )
        except Exception as exc:
            logger.warning("[EVAL] Call log write failed for %s: %s", task_name, exc)
