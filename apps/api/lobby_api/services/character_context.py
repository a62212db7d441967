"""Read surface for prompt assembly: what a character currently remembers, feels and wants."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from packages.lobby_core.clock import utc_now
from packages.lobby_core.social.affinity import describe_affinity

from ..storage.character_state import get_state
from ..storage.goals import list_goals
from ..storage.memories import list_active_memories
from ..storage.relationships import list_relationships


def character_context(
    character_name: str,
    *,
    now: Optional[datetime] = None,
    memory_limit: int = 30,
) -> dict[str, Any]:
    current = now or utc_now()
    relationships = [
        {**row, "descriptor": describe_affinity(int(row["affinity"]))}
        for row in list_relationships(character_name=character_name)
    ]
    return {
        "character": character_name,
        "memories": list_active_memories(character_name=character_name, now=current, limit=memory_limit),
        "relationships": relationships,
        "state": get_state(character_name=character_name),
        "goals": list_goals(character_name=character_name, active_only=True),
    }
