"""Memory guardian job: turn a character's fading memories into a pinned life chapter."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
import logging

from packages.lobby_core.clock import utc_now
from packages.lobby_core.llm.evaluator import EvaluationService
from packages.lobby_core.memory.guardian import (
    CHAPTER_IMPORTANCE,
    CHAPTER_MEMORY_TYPE,
    GUARDIAN_MIN_FADING,
    GUARDIAN_MIN_WORKING,
    GUARDIAN_SCAN_LIMIT,
    build_chapter_prompt,
    chapter_related,
    chapter_tags,
    parse_chapter,
    plan_fade_updates,
    select_fading,
)

from ..storage.character_state import list_states
from ..storage.llm_control import get_llm_policy, insert_call_log
from ..storage.memories import create_memory, list_reviewable_memories, update_memory
from .memory_review import reviewable_characters


logger = logging.getLogger("lobby_api.memory_guardian")
TASK_NAME = "memory_guardian"

_EVALUATOR = EvaluationService(policy_lookup=get_llm_policy, log_sink=insert_call_log)


def build_life_chapter(
    character_name: str,
    *,
    evaluator: Optional[EvaluationService] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """One evaluation call and at most one new core memory per character. Never raises."""
    service = evaluator or _EVALUATOR
    current = now or utc_now()
    try:
        working = list_reviewable_memories(character_name=character_name, now=current, limit=GUARDIAN_SCAN_LIMIT)
        if len(working) < GUARDIAN_MIN_WORKING:
            return {
                "chapter_created": False,
                "character": character_name,
                "reason": "insufficient_memories",
                "working": len(working),
            }
        fading = select_fading(working, current)
        if len(fading) < GUARDIAN_MIN_FADING:
            return {
                "chapter_created": False,
                "character": character_name,
                "reason": "insufficient_fading",
                "working": len(working),
                "fading": len(fading),
            }

        config_error = service.configuration_error(TASK_NAME)
        if config_error:
            return {
                "chapter_created": False,
                "skipped": True,
                "character": character_name,
                "reason": "configuration_missing",
                "error_code": config_error,
            }

        result = service.evaluate(
            task_name=TASK_NAME,
            prompt=build_chapter_prompt(character_name=character_name, memories=fading, now=current),
            expect="object",
            character_name=character_name,
        )
        if not result.ok:
            logger.info("[GUARDIAN] %s: no chapter (%s: %s)", character_name, result.error_kind, result.error_code)
            return {
                "chapter_created": False,
                "character": character_name,
                "reason": result.error_kind,
                "error_code": result.error_code,
            }
        chapter = parse_chapter(result.payload)
        if chapter is None:
            logger.info("[GUARDIAN] %s: chapter text missing or too short", character_name)
            return {"chapter_created": False, "character": character_name, "reason": "insufficient_chapter"}

        memory = create_memory(
            character_name=character_name,
            content=chapter,
            memory_type=CHAPTER_MEMORY_TYPE,
            importance=CHAPTER_IMPORTANCE,
            tier="core",
            emotional_tags=chapter_tags(fading),
            related_characters=chapter_related(
                fading,
                known_names=[state["character_name"] for state in list_states()],
                owner=character_name,
            ),
            now=current,
        )

        faded = 0
        for update in plan_fade_updates(fading):
            try:
                update_memory(memory_id=update.memory_id, changes=update.changes)
                faded += 1
            except Exception as exc:
                logger.warning("[GUARDIAN] %s: failed to condense %s: %s", character_name, update.memory_id, exc)

        logger.info(
            "[GUARDIAN] %s: life chapter saved, %d of %d fading memories condensed",
            character_name,
            faded,
            len(fading),
        )
        return {
            "chapter_created": True,
            "character": character_name,
            "memory_id": memory.get("id"),
            "chapter_preview": chapter[:120],
            "fading": len(fading),
            "memories_faded": faded,
            "working": len(working),
        }
    except Exception as exc:
        logger.exception("[GUARDIAN] %s: failed: %s", character_name, exc)
        return {
            "chapter_created": False,
            "character": character_name,
            "reason": "error",
            "error": f"{exc.__class__.__name__}: {exc}",
        }


def run_memory_guardian(
    *,
    character_names: Optional[list[str]] = None,
    evaluator: Optional[EvaluationService] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    service = evaluator or _EVALUATOR
    current = now or utc_now()
    try:
        names = character_names if character_names is not None else reviewable_characters()
        results = [build_life_chapter(name, evaluator=service, now=current) for name in names]
    except Exception as exc:
        logger.exception("[GUARDIAN] Batch failed: %s", exc)
        return {"ok": False, "reason": "error", "error": f"{exc.__class__.__name__}: {exc}"}
    return {
        "ok": True,
        "characters": len(results),
        "chapters_created": sum(1 for r in results if r.get("chapter_created")),
        "memories_faded": sum(int(r.get("memories_faded") or 0) for r in results),
        "results": results,
    }
