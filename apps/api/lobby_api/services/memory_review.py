"""Memory review job: characters keep, fade, or forget their oldest working memories."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
import logging

from packages.lobby_core.clock import utc_now
from packages.lobby_core.llm.evaluator import EvaluationService
from packages.lobby_core.memory.lifecycle import REVIEW_BATCH_LIMIT, REVIEW_MIN_CANDIDATES
from packages.lobby_core.memory.review import build_review_prompt, plan_review_updates

from ..storage.character_state import human_characters, list_states
from ..storage.llm_control import get_llm_policy, insert_call_log
from ..storage.memories import list_reviewable_memories, update_memory


logger = logging.getLogger("lobby_api.memory_review")
TASK_NAME = "memory_review"

_EVALUATOR = EvaluationService(policy_lookup=get_llm_policy, log_sink=insert_call_log)


def review_character_memories(
    character_name: str,
    *,
    evaluator: Optional[EvaluationService] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Run one review batch for a character. Never raises."""
    service = evaluator or _EVALUATOR
    current = now or utc_now()
    try:
        candidates = list_reviewable_memories(
            character_name=character_name,
            now=current,
            limit=REVIEW_BATCH_LIMIT,
        )
        if len(candidates) < REVIEW_MIN_CANDIDATES:
            return {
                "reviewed": False,
                "character": character_name,
                "reason": "insufficient_memories",
                "total": len(candidates),
            }

        config_error = service.configuration_error(TASK_NAME)
        if config_error:
            return {
                "reviewed": False,
                "skipped": True,
                "character": character_name,
                "reason": "configuration_missing",
                "error_code": config_error,
            }

        prompt = build_review_prompt(character_name=character_name, memories=candidates, now=current)
        result = service.evaluate(
            task_name=TASK_NAME,
            prompt=prompt,
            expect="array",
            character_name=character_name,
        )
        if not result.ok:
            logger.info(
                "[MEMORY-REVIEW] %s: no verdict (%s: %s)",
                character_name,
                result.error_kind,
                result.error_code,
            )
            return {
                "reviewed": False,
                "character": character_name,
                "reason": result.error_kind,
                "error_code": result.error_code,
            }

        counts = {"KEEP": 0, "FADE": 0, "FORGET": 0}
        failed = 0
        for update in plan_review_updates(memories=candidates, verdicts=result.payload, now=current):
            try:
                update_memory(memory_id=update.memory_id, changes=update.changes)
            except Exception as exc:
                failed += 1
                logger.warning(
                    "[MEMORY-REVIEW] %s: failed to apply %s to %s: %s",
                    character_name,
                    update.verdict,
                    update.memory_id,
                    exc,
                )
                continue
            counts[update.verdict] += 1

        logger.info(
            "[MEMORY-REVIEW] %s: reviewed %d (kept=%d faded=%d forgotten=%d)",
            character_name,
            len(candidates),
            counts["KEEP"],
            counts["FADE"],
            counts["FORGET"],
        )
        return {
            "reviewed": True,
            "character": character_name,
            "total": len(candidates),
            "kept": counts["KEEP"],
            "faded": counts["FADE"],
            "forgotten": counts["FORGET"],
            "failed": failed,
        }
    except Exception as exc:
        logger.exception("[MEMORY-REVIEW] %s: review failed: %s", character_name, exc)
        return {
            "reviewed": False,
            "character": character_name,
            "reason": "error",
            "error": f"{exc.__class__.__name__}: {exc}",
        }


def reviewable_characters() -> list[str]:
    humans = human_characters()
    return [
        state["character_name"]
        for state in list_states()
        if not state["is_human"] and state["character_name"] not in humans
    ]


def run_memory_reviews(
    *,
    character_names: Optional[list[str]] = None,
    evaluator: Optional[EvaluationService] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    service = evaluator or _EVALUATOR
    current = now or utc_now()
    try:
        config_error = service.configuration_error(TASK_NAME)
        if config_error:
            logger.info("[MEMORY-REVIEW] Skipped: provider not configured (%s)", config_error)
            return {"ok": True, "skipped": True, "reason": "configuration_missing", "error_code": config_error}
        names = character_names if character_names is not None else reviewable_characters()
        results = [review_character_memories(name, evaluator=service, now=current) for name in names]
    except Exception as exc:
        logger.exception("[MEMORY-REVIEW] Batch failed: %s", exc)
        return {"ok": False, "reason": "error", "error": f"{exc.__class__.__name__}: {exc}"}
    return {
        "ok": True,
        "characters": len(results),
        "reviewed": sum(1 for r in results if r.get("reviewed")),
        "results": results,
    }
