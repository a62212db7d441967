"""Conversation sweep job: judge a dialogue window and mint group memories."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
import logging

from packages.lobby_core.clock import utc_now
from packages.lobby_core.llm.evaluator import EvaluationService
from packages.lobby_core.memory.sweep import (
    LAST_SWEEP_SETTING,
    SWEEP_COUNT_SETTING,
    SWEEP_MEMORY_TYPE,
    build_sweep_prompt,
    directed_pairs,
    distinct_speakers,
    group_memory_content,
    next_schedule_state,
    parse_sweep_verdict,
    schedule_guard,
    sweep_expiry,
    window_guard,
)

from ..storage.lobby_settings import get_setting_dict, put_setting
from ..storage.llm_control import get_llm_policy, insert_call_log
from ..storage.memories import create_memory
from ..storage.relationships import create_relationship_if_absent


logger = logging.getLogger("lobby_api.conversation_sweep")
TASK_NAME = "conversation_sweep"

_EVALUATOR = EvaluationService(policy_lookup=get_llm_policy, log_sink=insert_call_log)


def _record_sweep(now: datetime) -> None:
    last_value, count_value = next_schedule_state(sweep_count=get_setting_dict(SWEEP_COUNT_SETTING), now=now)
    put_setting(LAST_SWEEP_SETTING, last_value)
    put_setting(SWEEP_COUNT_SETTING, count_value)


def sweep_conversation(
    messages: list[dict[str, Any]],
    *,
    evaluator: Optional[EvaluationService] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Evaluate one dialogue window. Guards short-circuit in order and never write."""
    service = evaluator or _EVALUATOR
    current = now or utc_now()
    try:
        window = [m for m in messages if str(m.get("speaker") or "").strip()]
        reason = window_guard(window)
        if reason is None:
            reason = schedule_guard(
                last_sweep=get_setting_dict(LAST_SWEEP_SETTING),
                sweep_count=get_setting_dict(SWEEP_COUNT_SETTING),
                now=current,
            )
        if reason is not None:
            return {"swept": False, "reason": reason, "messages": len(window)}

        config_error = service.configuration_error(TASK_NAME)
        if config_error:
            return {"swept": False, "skipped": True, "reason": "configuration_missing", "error_code": config_error}

        speakers = distinct_speakers(window)
        result = service.evaluate(task_name=TASK_NAME, prompt=build_sweep_prompt(window), expect="object")
        if not result.ok:
            logger.info("[SWEEP] No verdict (%s: %s)", result.error_kind, result.error_code)
            return {"swept": False, "reason": result.error_kind, "error_code": result.error_code}

        verdict = parse_sweep_verdict(result.payload, speakers=speakers)
        memories_created = 0
        relationships_created = 0
        if verdict.memorable:
            expires_at = sweep_expiry(verdict.importance, current)
            content = group_memory_content(verdict.summary)
            tags = [verdict.emotional_tone] if verdict.emotional_tone else []
            for name in verdict.participants:
                try:
                    create_memory(
                        character_name=name,
                        content=content,
                        memory_type=SWEEP_MEMORY_TYPE,
                        importance=verdict.importance,
                        emotional_tags=tags,
                        related_characters=[p for p in verdict.participants if p != name],
                        expires_at=expires_at,
                        now=current,
                    )
                    memories_created += 1
                except Exception as exc:
                    logger.warning("[SWEEP] Failed to store group memory for %s: %s", name, exc)
            for source, target in directed_pairs(verdict.participants):
                try:
                    if create_relationship_if_absent(character_name=source, target_name=target, now=current):
                        relationships_created += 1
                except Exception as exc:
                    logger.warning("[SWEEP] Failed to create relationship %s -> %s: %s", source, target, exc)

        _record_sweep(current)
        logger.info(
            "[SWEEP] %s window of %d messages (%d speakers): %d memories, %d new relationships",
            "Memorable" if verdict.memorable else "Unremarkable",
            len(window),
            len(speakers),
            memories_created,
            relationships_created,
        )
        return {
            "swept": True,
            "memorable": verdict.memorable,
            "importance": verdict.importance if verdict.memorable else None,
            "type": verdict.moment_type if verdict.memorable else None,
            "participants": verdict.participants,
            "memories_created": memories_created,
            "relationships_created": relationships_created,
        }
    except Exception as exc:
        logger.exception("[SWEEP] Sweep failed: %s", exc)
        return {"swept": False, "reason": "error", "error": f"{exc.__class__.__name__}: {exc}"}
