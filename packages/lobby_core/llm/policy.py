"""Evaluation task policy primitives for the lobby engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


ALLOWED_MODEL_TIERS = ("strong", "fast", "cheap")


@dataclass(frozen=True)
class TaskPolicy:
    task_name: str
    model_tier: str
    max_input_tokens: int
    max_output_tokens: int
    temperature: float
    timeout_ms: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_TASK_POLICIES: dict[str, TaskPolicy] = {
    "memory_review": TaskPolicy(
        task_name="memory_review",
        model_tier="cheap",
        max_input_tokens=2400,
        max_output_tokens=500,
        temperature=0.3,
        timeout_ms=20000,
    ),
    "conversation_sweep": TaskPolicy(
        task_name="conversation_sweep",
        model_tier="cheap",
        max_input_tokens=3200,
        max_output_tokens=200,
        temperature=0.2,
        timeout_ms=20000,
    ),
    "memory_guardian": TaskPolicy(
        task_name="memory_guardian",
        model_tier="cheap",
        max_input_tokens=4000,
        max_output_tokens=300,
        temperature=0.7,
        timeout_ms=25000,
    ),
}


def normalize_model_tier(value: str) -> str:
    tier = str(value or "").strip().lower()
    if tier in ALLOWED_MODEL_TIERS:
        return tier
    return "cheap"


def default_policy_for_task(task_name: str) -> TaskPolicy:
    key = str(task_name).strip()
    if key in DEFAULT_TASK_POLICIES:
        return DEFAULT_TASK_POLICIES[key]
    return TaskPolicy(
        task_name=key or "unknown_task",
        model_tier="cheap",
        max_input_tokens=1600,
        max_output_tokens=200,
        temperature=0.2,
        timeout_ms=15000,
    )


def normalize_policy_row(task_name: str, row: dict[str, Any]) -> TaskPolicy:
    return TaskPolicy(
        task_name=task_name,
        model_tier=normalize_model_tier(str(row.get("model_tier") or "cheap")),
        max_input_tokens=max(1, int(row.get("max_input_tokens") or 1)),
        max_output_tokens=max(1, int(row.get("max_output_tokens") or 1)),
        temperature=float(row.get("temperature") if row.get("temperature") is not None else 0.2),
        timeout_ms=max(100, int(row.get("timeout_ms") or 100)),
    )


def estimate_token_count(text: str) -> int:
    # Cheap estimate that keeps budgeting deterministic and provider-agnostic.
    return max(1, len(text) // 4)


def trim_prompt_to_budget(prompt: str, max_input_tokens: int) -> tuple[str, bool, int]:
    """Cut the middle of an over-budget prompt, keeping its framing and output contract."""
    estimated = estimate_token_count(prompt)
    if estimated <= max_input_tokens:
        return prompt, False, estimated

    max_chars = max(32, int(max_input_tokens * 4))
    head = prompt[: max_chars // 2]
    tail = prompt[-(max_chars - len(head)) :]
    trimmed = f"{head}\n...\n{tail}"
    return trimmed, True, estimate_token_count(trimmed)
