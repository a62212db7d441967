"""Evaluation Service helpers: task policies, provider access, verdict parsing."""

from .evaluator import (
    CONFIGURATION_MISSING,
    PARSE_FAILURE,
    UPSTREAM_UNAVAILABLE,
    EvaluationResult,
    EvaluationService,
)
from .json_extract import EvaluationParseError, extract_json_span, parse_json_payload
from .policy import ALLOWED_MODEL_TIERS, DEFAULT_TASK_POLICIES, TaskPolicy, default_policy_for_task
from .providers import DEFAULT_MODEL_BY_TIER, ProviderCompletion, complete_prompt

__all__ = [
    "CONFIGURATION_MISSING",
    "PARSE_FAILURE",
    "UPSTREAM_UNAVAILABLE",
    "EvaluationResult",
    "EvaluationService",
    "EvaluationParseError",
    "extract_json_span",
    "parse_json_payload",
    "ALLOWED_MODEL_TIERS",
    "DEFAULT_TASK_POLICIES",
    "TaskPolicy",
    "default_policy_for_task",
    "DEFAULT_MODEL_BY_TIER",
    "ProviderCompletion",
    "complete_prompt",
]
