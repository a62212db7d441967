"""Memory store: what each character remembers, with tier, importance and expiry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional
import json
import os
import sqlite3
import threading
import uuid

from packages.lobby_core.clock import iso_utc, normalize_timestamp, utc_now
from packages.lobby_core.memory.lifecycle import (
    clamp_importance,
    normalize_tags,
    normalize_tier,
    resolve_expiry,
)


WORKSPACE_ROOT = Path(__file__).resolve().parents[4]
MIGRATIONS_DIR = WORKSPACE_ROOT / "packages" / "lobby_core" / "db" / "migrations"

UPDATABLE_FIELDS = ("content", "importance", "expires_at", "memory_type")


def _json_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
            if isinstance(parsed, list):
                return [str(v) for v in parsed]
        except Exception:
            return []
    return []


def _memory_row(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row.get("id") or ""),
        "character_name": str(row.get("character_name") or ""),
        "content": str(row.get("content") or ""),
        "memory_type": str(row.get("memory_type") or ""),
        "importance": int(row.get("importance") or 0),
        "memory_tier": normalize_tier(row.get("memory_tier")),
        "is_pinned": bool(row.get("is_pinned")),
        "emotional_tags": _json_list(row.get("emotional_tags")),
        "related_characters": _json_list(row.get("related_characters")),
        "created_at": normalize_timestamp(row.get("created_at")),
        "expires_at": normalize_timestamp(row.get("expires_at")),
    }


def _update_values(changes: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key in UPDATABLE_FIELDS:
        if key not in changes:
            continue
        value = changes[key]
        if key == "importance":
            value = clamp_importance(value)
        elif key in {"content", "memory_type"}:
            value = str(value)
        values[key] = value
    return values


class MemoryStore(ABC):
    @abstractmethod
    def init_db(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def insert_memory(self, record: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_memory(self, memory_id: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_active_memories(self, *, character_name: str, now: datetime, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_reviewable_memories(self, *, character_name: str, now: datetime, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_memories_since(
        self,
        *,
        character_name: str,
        memory_types: list[str],
        since: datetime,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def update_memory(self, *, memory_id: str, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def pin_memory(self, *, memory_id: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def delete_low_value_memories(self, *, below_importance: int, created_before: datetime) -> int:
        raise NotImplementedError

    @abstractmethod
    def decay_importance(
        self,
        *,
        lowest: int,
        highest: int,
        created_before: datetime,
        new_importance: int,
    ) -> int:
        raise NotImplementedError


class SQLiteMemoryStore(MemoryStore):
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._initialized = False
        self._local = threading.local()

    def _connect(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA busy_timeout = 5000")
        self._local.conn = conn
        return conn

    def init_db(self) -> None:
        if self._initialized:
            return
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS character_memories (
                  id TEXT PRIMARY KEY,
                  character_name TEXT NOT NULL,
                  content TEXT NOT NULL,
                  memory_type TEXT NOT NULL,
                  importance INTEGER NOT NULL CHECK (importance BETWEEN 1 AND 10),
                  memory_tier TEXT NOT NULL DEFAULT 'working',
                  is_pinned INTEGER NOT NULL DEFAULT 0,
                  emotional_tags TEXT NOT NULL DEFAULT '[]',
                  related_characters TEXT NOT NULL DEFAULT '[]',
                  created_at TEXT NOT NULL,
                  expires_at TEXT,
                  CHECK ((is_pinned = 1 AND expires_at IS NULL) OR (is_pinned = 0 AND expires_at IS NOT NULL))
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_character_memories_owner_created "
                "ON character_memories(character_name, created_at DESC)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_character_memories_owner_expires "
                "ON character_memories(character_name, expires_at)"
            )
        self._initialized = True

    def _fetch(self, memory_id: str) -> Optional[dict[str, Any]]:
        row = self._connect().execute("SELECT * FROM character_memories WHERE id = ?", (memory_id,)).fetchone()
        return _memory_row(dict(row)) if row else None

    def insert_memory(self, record: dict[str, Any]) -> dict[str, Any]:
        self.init_db()
        expires_at = record.get("expires_at")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO character_memories (
                  id, character_name, content, memory_type, importance, memory_tier,
                  is_pinned, emotional_tags, related_characters, created_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["id"],
                    record["character_name"],
                    record["content"],
                    record["memory_type"],
                    int(record["importance"]),
                    record["memory_tier"],
                    1 if record["is_pinned"] else 0,
                    json.dumps(record["emotional_tags"], separators=(",", ":")),
                    json.dumps(record["related_characters"], separators=(",", ":")),
                    iso_utc(record["created_at"]),
                    iso_utc(expires_at) if expires_at is not None else None,
                ),
            )
        return self._fetch(record["id"]) or {}

    def get_memory(self, memory_id: str) -> Optional[dict[str, Any]]:
        self.init_db()
        return self._fetch(memory_id)

    def list_active_memories(self, *, character_name: str, now: datetime, limit: int) -> list[dict[str, Any]]:
        self.init_db()
        rows = self._connect().execute(
            """
            SELECT * FROM character_memories
            WHERE character_name = ? AND (is_pinned = 1 OR expires_at > ?)
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (character_name, iso_utc(now), int(limit)),
        ).fetchall()
        return [_memory_row(dict(r)) for r in rows]

    def list_reviewable_memories(self, *, character_name: str, now: datetime, limit: int) -> list[dict[str, Any]]:
        self.init_db()
        rows = self._connect().execute(
            """
            SELECT * FROM character_memories
            WHERE character_name = ?
              AND memory_tier = 'working'
              AND is_pinned = 0
              AND expires_at > ?
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (character_name, iso_utc(now), int(limit)),
        ).fetchall()
        return [_memory_row(dict(r)) for r in rows]

    def list_memories_since(
        self,
        *,
        character_name: str,
        memory_types: list[str],
        since: datetime,
    ) -> list[dict[str, Any]]:
        self.init_db()
        if not memory_types:
            return []
        placeholders = ", ".join("?" for _ in memory_types)
        rows = self._connect().execute(
            f"""
            SELECT * FROM character_memories
            WHERE character_name = ? AND memory_type IN ({placeholders}) AND created_at >= ?
            ORDER BY created_at DESC
            """,
            (character_name, *memory_types, iso_utc(since)),
        ).fetchall()
        return [_memory_row(dict(r)) for r in rows]

    def update_memory(self, *, memory_id: str, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
        self.init_db()
        values = _update_values(changes)
        if not values:
            return self._fetch(memory_id)
        if "expires_at" in values:
            values["expires_at"] = iso_utc(values["expires_at"])
        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE character_memories SET {assignments} WHERE id = ? AND is_pinned = 0",
                (*values.values(), memory_id),
            )
        return self._fetch(memory_id)

    def pin_memory(self, *, memory_id: str) -> Optional[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE character_memories
                SET is_pinned = 1, memory_tier = 'core', expires_at = NULL
                WHERE id = ?
                """,
                (memory_id,),
            )
        return self._fetch(memory_id)

    def delete_low_value_memories(self, *, below_importance: int, created_before: datetime) -> int:
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM character_memories
                WHERE is_pinned = 0 AND importance < ? AND created_at < ?
                """,
                (int(below_importance), iso_utc(created_before)),
            )
        return int(cur.rowcount or 0)

    def decay_importance(
        self,
        *,
        lowest: int,
        highest: int,
        created_before: datetime,
        new_importance: int,
    ) -> int:
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE character_memories
                SET importance = ?
                WHERE is_pinned = 0 AND importance BETWEEN ? AND ? AND created_at < ?
                """,
                (int(new_importance), int(lowest), int(highest), iso_utc(created_before)),
            )
        return int(cur.rowcount or 0)


class PostgresMemoryStore(MemoryStore):
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._initialized = False
        self._ensure_driver()

    @staticmethod
    def _ensure_driver() -> None:
        try:
            import psycopg  # noqa: F401
        except Exception as exc:  # pragma: no cover
            raise RuntimeError(
                "Postgres backend requires `psycopg`. Install it with: pip install psycopg[binary]"
            ) from exc

    def _connect(self):
        import psycopg
        from psycopg.rows import dict_row

        return psycopg.connect(self.database_url, row_factory=dict_row)

    def _run_migrations(self) -> None:
        migration_files = sorted(MIGRATIONS_DIR.glob("*.sql"))
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schema_migrations (
                      id TEXT PRIMARY KEY,
                      applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                    """
                )
                cur.execute("SELECT id FROM schema_migrations")
                applied = {row["id"] for row in cur.fetchall()}
                for file in migration_files:
                    if file.name in applied:
                        continue
                    cur.execute(file.read_text(encoding="utf-8"))
                    cur.execute("INSERT INTO schema_migrations (id) VALUES (%s)", (file.name,))

    def init_db(self) -> None:
        if self._initialized:
            return
        self._run_migrations()
        self._initialized = True

    def _query(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() if cur.description else []
        return [_memory_row(dict(r)) for r in rows]

    def _execute(self, sql: str, params: tuple[Any, ...]) -> int:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return int(cur.rowcount or 0)

    def insert_memory(self, record: dict[str, Any]) -> dict[str, Any]:
        rows = self._query(
            """
            INSERT INTO character_memories (
              id, character_name, content, memory_type, importance, memory_tier,
              is_pinned, emotional_tags, related_characters, created_at, expires_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s, %s)
            RETURNING *
            """,
            (
                record["id"],
                record["character_name"],
                record["content"],
                record["memory_type"],
                int(record["importance"]),
                record["memory_tier"],
                bool(record["is_pinned"]),
                json.dumps(record["emotional_tags"]),
                json.dumps(record["related_characters"]),
                record["created_at"],
                record.get("expires_at"),
            ),
        )
        return rows[0] if rows else {}

    def get_memory(self, memory_id: str) -> Optional[dict[str, Any]]:
        rows = self._query("SELECT * FROM character_memories WHERE id = %s", (memory_id,))
        return rows[0] if rows else None

    def list_active_memories(self, *, character_name: str, now: datetime, limit: int) -> list[dict[str, Any]]:
        return self._query(
            """
            SELECT * FROM character_memories
            WHERE character_name = %s AND (is_pinned OR expires_at > %s)
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (character_name, now, int(limit)),
        )

    def list_reviewable_memories(self, *, character_name: str, now: datetime, limit: int) -> list[dict[str, Any]]:
        return self._query(
            """
            SELECT * FROM character_memories
            WHERE character_name = %s
              AND memory_tier = 'working'
              AND NOT is_pinned
              AND expires_at > %s
            ORDER BY created_at ASC
            LIMIT %s
            """,
            (character_name, now, int(limit)),
        )

    def list_memories_since(
        self,
        *,
        character_name: str,
        memory_types: list[str],
        since: datetime,
    ) -> list[dict[str, Any]]:
        if not memory_types:
            return []
        return self._query(
            """
            SELECT * FROM character_memories
            WHERE character_name = %s AND memory_type = ANY(%s) AND created_at >= %s
            ORDER BY created_at DESC
            """,
            (character_name, list(memory_types), since),
        )

    def update_memory(self, *, memory_id: str, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
        values = _update_values(changes)
        if not values:
            return self.get_memory(memory_id)
        assignments = ", ".join(f"{key} = %s" for key in values)
        self._execute(
            f"UPDATE character_memories SET {assignments} WHERE id = %s AND NOT is_pinned",
            (*values.values(), memory_id),
        )
        return self.get_memory(memory_id)

    def pin_memory(self, *, memory_id: str) -> Optional[dict[str, Any]]:
        rows = self._query(
            """
            UPDATE character_memories
            SET is_pinned = TRUE, memory_tier = 'core', expires_at = NULL
            WHERE id = %s
            RETURNING *
            """,
            (memory_id,),
        )
        return rows[0] if rows else None

    def delete_low_value_memories(self, *, below_importance: int, created_before: datetime) -> int:
        return self._execute(
            """
            DELETE FROM character_memories
            WHERE NOT is_pinned AND importance < %s AND created_at < %s
            """,
            (int(below_importance), created_before),
        )

    def decay_importance(
        self,
        *,
        lowest: int,
        highest: int,
        created_before: datetime,
        new_importance: int,
    ) -> int:
        return self._execute(
            """
            UPDATE character_memories
            SET importance = %s
            WHERE NOT is_pinned AND importance BETWEEN %s AND %s AND created_at < %s
            """,
            (int(new_importance), int(lowest), int(highest), created_before),
        )


def _resolve_sqlite_path(database_url: Optional[str]) -> Path:
    if database_url and database_url.startswith("sqlite:///"):
        raw = database_url[len("sqlite:///") :]
        path = Path(raw)
        if not path.is_absolute():
            path = (WORKSPACE_ROOT / path).resolve()
        return path
    raw = os.environ.get("LOBBY_DB_PATH", str(WORKSPACE_ROOT / "data" / "lobby.db"))
    path = Path(raw)
    if not path.is_absolute():
        path = (WORKSPACE_ROOT / path).resolve()
    return path


def _database_url() -> Optional[str]:
    return os.environ.get("DATABASE_URL")


@lru_cache(maxsize=1)
def _backend() -> MemoryStore:
    database_url = _database_url()
    if database_url and database_url.startswith(("postgres://", "postgresql://")):
        return PostgresMemoryStore(database_url)
    return SQLiteMemoryStore(_resolve_sqlite_path(database_url))


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def init_db() -> None:
    _backend().init_db()


def create_memory(
    *,
    character_name: str,
    content: str,
    memory_type: str,
    importance: int = 5,
    tier: str = "working",
    pinned: bool = False,
    emotional_tags: Optional[list[str]] = None,
    related_characters: Optional[list[str]] = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    created_at = now or utc_now()
    bounded_importance = clamp_importance(importance)
    is_pinned, resolved_expiry = resolve_expiry(
        importance=bounded_importance,
        tier=tier,
        pinned=pinned,
        expires_at=expires_at,
        now=created_at,
    )
    record = {
        "id": str(uuid.uuid4()),
        "character_name": str(character_name).strip(),
        "content": str(content),
        "memory_type": str(memory_type or "observation").strip(),
        "importance": bounded_importance,
        "memory_tier": "core" if is_pinned else normalize_tier(tier),
        "is_pinned": is_pinned,
        "emotional_tags": normalize_tags(emotional_tags),
        "related_characters": normalize_tags(related_characters),
        "created_at": created_at,
        "expires_at": resolved_expiry,
    }
    return _backend().insert_memory(record)


def get_memory(*, memory_id: str) -> Optional[dict[str, Any]]:
    return _backend().get_memory(memory_id)


def list_active_memories(
    *,
    character_name: str,
    now: Optional[datetime] = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    bounded_limit = max(1, min(int(limit), 200))
    return _backend().list_active_memories(character_name=character_name, now=now or utc_now(), limit=bounded_limit)


def list_reviewable_memories(*, character_name: str, now: datetime, limit: int) -> list[dict[str, Any]]:
    return _backend().list_reviewable_memories(character_name=character_name, now=now, limit=limit)


def has_recent_memory(
    *,
    character_name: str,
    memory_types: list[str],
    related_to: str,
    since: datetime,
) -> bool:
    rows = _backend().list_memories_since(character_name=character_name, memory_types=memory_types, since=since)
    return any(related_to in row["related_characters"] for row in rows)


def update_memory(*, memory_id: str, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
    return _backend().update_memory(memory_id=memory_id, changes=changes)


def pin_memory(*, memory_id: str) -> Optional[dict[str, Any]]:
    return _backend().pin_memory(memory_id=memory_id)


def delete_low_value_memories(*, below_importance: int, created_before: datetime) -> int:
    return _backend().delete_low_value_memories(below_importance=below_importance, created_before=created_before)


def decay_importance(*, lowest: int, highest: int, created_before: datetime, new_importance: int) -> int:
    return _backend().decay_importance(
        lowest=lowest,
        highest=highest,
        created_before=created_before,
        new_importance=new_importance,
    )
