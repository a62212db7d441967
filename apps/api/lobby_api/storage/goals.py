"""Goal and want store: short-term objectives, at most one active per owner and scope."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional
import os
import sqlite3
import threading
import uuid

from packages.lobby_core.clock import iso_utc, normalize_timestamp, utc_now


WORKSPACE_ROOT = Path(__file__).resolve().parents[4]
MIGRATIONS_DIR = WORKSPACE_ROOT / "packages" / "lobby_core" / "db" / "migrations"

GOAL_TYPES = {"goal", "want"}
SUPERSEDED_REASON = "superseded by new goal"
EXPIRED_REASON = "expired"
DEFAULT_GOAL_PRIORITY = 5
DEFAULT_WANT_PRIORITY = 2


def _normalize_goal_type(value: str | None) -> str:
    normalized = str(value or "goal").strip().lower()
    if normalized not in GOAL_TYPES:
        return "goal"
    return normalized


def want_scope(target_name: str) -> str:
    return f"want:{str(target_name).strip()}"


def _clamp_progress(value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = 0
    return max(0, min(100, number))


def _goal_row(row: dict[str, Any]) -> dict[str, Any]:
    completed_at = normalize_timestamp(row.get("completed_at"))
    failed_at = normalize_timestamp(row.get("failed_at"))
    if completed_at:
        status = "completed"
    elif failed_at:
        status = "failed"
    else:
        status = "active"
    return {
        "id": str(row.get("id") or ""),
        "character_name": str(row.get("character_name") or ""),
        "goal_text": str(row.get("goal_text") or ""),
        "goal_type": _normalize_goal_type(row.get("goal_type")),
        "scope": str(row.get("scope") or "goal"),
        "priority": int(row.get("priority") or 0),
        "progress": int(row.get("progress") or 0),
        "status": status,
        "created_at": normalize_timestamp(row.get("created_at")),
        "completed_at": completed_at,
        "failed_at": failed_at,
        "fail_reason": row.get("fail_reason"),
    }


class GoalStore(ABC):
    @abstractmethod
    def init_db(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def fail_active_in_scope(self, *, character_name: str, scope: str, reason: str, now: datetime) -> int:
        raise NotImplementedError

    @abstractmethod
    def insert_goal(self, record: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def get_goal(self, goal_id: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_goals(
        self,
        *,
        character_name: str,
        active_only: bool,
        goal_type: Optional[str],
        limit: int,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def set_progress(self, *, goal_id: str, progress: int, completed_at: Optional[datetime]) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def complete_goal(self, *, goal_id: str, now: datetime) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def fail_goal(self, *, goal_id: str, reason: str, now: datetime) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def fail_stale_wants(self, *, created_before: datetime, reason: str, now: datetime) -> int:
        raise NotImplementedError


class SQLiteGoalStore(GoalStore):
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
                CREATE TABLE IF NOT EXISTS character_goals (
                  id TEXT PRIMARY KEY,
                  character_name TEXT NOT NULL,
                  goal_text TEXT NOT NULL,
                  goal_type TEXT NOT NULL DEFAULT 'goal',
                  scope TEXT NOT NULL DEFAULT 'goal',
                  priority INTEGER NOT NULL DEFAULT 5,
                  progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
                  created_at TEXT NOT NULL,
                  completed_at TEXT,
                  failed_at TEXT,
                  fail_reason TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_character_goals_owner_scope "
                "ON character_goals(character_name, scope, created_at DESC)"
            )
        self._initialized = True

    def _fetch(self, goal_id: str) -> Optional[dict[str, Any]]:
        row = self._connect().execute("SELECT * FROM character_goals WHERE id = ?", (goal_id,)).fetchone()
        return _goal_row(dict(row)) if row else None

    def fail_active_in_scope(self, *, character_name: str, scope: str, reason: str, now: datetime) -> int:
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE character_goals
                SET failed_at = ?, fail_reason = ?
                WHERE character_name = ? AND scope = ? AND completed_at IS NULL AND failed_at IS NULL
                """,
                (iso_utc(now), reason, character_name, scope),
            )
        return int(cur.rowcount or 0)

    def insert_goal(self, record: dict[str, Any]) -> dict[str, Any]:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO character_goals (
                  id, character_name, goal_text, goal_type, scope, priority, progress, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    record["id"],
                    record["character_name"],
                    record["goal_text"],
                    record["goal_type"],
                    record["scope"],
                    int(record["priority"]),
                    iso_utc(record["created_at"]),
                ),
            )
        return self._fetch(record["id"]) or {}

    def get_goal(self, goal_id: str) -> Optional[dict[str, Any]]:
        self.init_db()
        return self._fetch(goal_id)

    def list_goals(
        self,
        *,
        character_name: str,
        active_only: bool,
        goal_type: Optional[str],
        limit: int,
    ) -> list[dict[str, Any]]:
        self.init_db()
        clauses = ["character_name = ?"]
        params: list[Any] = [character_name]
        if active_only:
            clauses.append("completed_at IS NULL AND failed_at IS NULL")
        if goal_type:
            clauses.append("goal_type = ?")
            params.append(goal_type)
        rows = self._connect().execute(
            f"SELECT * FROM character_goals WHERE {' AND '.join(clauses)} ORDER BY created_at DESC LIMIT ?",
            (*params, int(limit)),
        ).fetchall()
        return [_goal_row(dict(r)) for r in rows]

    def set_progress(self, *, goal_id: str, progress: int, completed_at: Optional[datetime]) -> Optional[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE character_goals
                SET progress = ?, completed_at = COALESCE(?, completed_at)
                WHERE id = ? AND completed_at IS NULL AND failed_at IS NULL
                """,
                (int(progress), iso_utc(completed_at) if completed_at else None, goal_id),
            )
        return self._fetch(goal_id)

    def complete_goal(self, *, goal_id: str, now: datetime) -> Optional[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE character_goals
                SET completed_at = ?, progress = 100
                WHERE id = ? AND completed_at IS NULL AND failed_at IS NULL
                """,
                (iso_utc(now), goal_id),
            )
        return self._fetch(goal_id)

    def fail_goal(self, *, goal_id: str, reason: str, now: datetime) -> Optional[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE character_goals
                SET failed_at = ?, fail_reason = ?
                WHERE id = ? AND completed_at IS NULL AND failed_at IS NULL
                """,
                (iso_utc(now), reason, goal_id),
            )
        return self._fetch(goal_id)

    def fail_stale_wants(self, *, created_before: datetime, reason: str, now: datetime) -> int:
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE character_goals
                SET failed_at = ?, fail_reason = ?
                WHERE goal_type = 'want' AND completed_at IS NULL AND failed_at IS NULL AND created_at < ?
                """,
                (iso_utc(now), reason, iso_utc(created_before)),
            )
        return int(cur.rowcount or 0)


class PostgresGoalStore(GoalStore):
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

    def _rows(self, sql: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return [_goal_row(dict(r)) for r in cur.fetchall()] if cur.description else []

    def _execute(self, sql: str, params: tuple[Any, ...]) -> int:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return int(cur.rowcount or 0)

    def fail_active_in_scope(self, *, character_name: str, scope: str, reason: str, now: datetime) -> int:
        return self._execute(
            """
            UPDATE character_goals
            SET failed_at = %s, fail_reason = %s
            WHERE character_name = %s AND scope = %s AND completed_at IS NULL AND failed_at IS NULL
            """,
            (now, reason, character_name, scope),
        )

    def insert_goal(self, record: dict[str, Any]) -> dict[str, Any]:
        rows = self._rows(
            """
            INSERT INTO character_goals (
              id, character_name, goal_text, goal_type, scope, priority, progress, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, 0, %s)
            RETURNING *
            """,
            (
                record["id"],
                record["character_name"],
                record["goal_text"],
                record["goal_type"],
                record["scope"],
                int(record["priority"]),
                record["created_at"],
            ),
        )
        return rows[0] if rows else {}

    def get_goal(self, goal_id: str) -> Optional[dict[str, Any]]:
        rows = self._rows("SELECT * FROM character_goals WHERE id = %s", (goal_id,))
        return rows[0] if rows else None

    def list_goals(
        self,
        *,
        character_name: str,
        active_only: bool,
        goal_type: Optional[str],
        limit: int,
    ) -> list[dict[str, Any]]:
        clauses = ["character_name = %s"]
        params: list[Any] = [character_name]
        if active_only:
            clauses.append("completed_at IS NULL AND failed_at IS NULL")
        if goal_type:
            clauses.append("goal_type = %s")
            params.append(goal_type)
        return self._rows(
            f"SELECT * FROM character_goals WHERE {' AND '.join(clauses)} ORDER BY created_at DESC LIMIT %s",
            (*params, int(limit)),
        )

    def set_progress(self, *, goal_id: str, progress: int, completed_at: Optional[datetime]) -> Optional[dict[str, Any]]:
        self._execute(
            """
            UPDATE character_goals
            SET progress = %s, completed_at = COALESCE(%s, completed_at)
            WHERE id = %s AND completed_at IS NULL AND failed_at IS NULL
            """,
            (int(progress), completed_at, goal_id),
        )
        return self.get_goal(goal_id)

    def complete_goal(self, *, goal_id: str, now: datetime) -> Optional[dict[str, Any]]:
        self._execute(
            """
            UPDATE character_goals
            SET completed_at = %s, progress = 100
            WHERE id = %s AND completed_at IS NULL AND failed_at IS NULL
            """,
            (now, goal_id),
        )
        return self.get_goal(goal_id)

    def fail_goal(self, *, goal_id: str, reason: str, now: datetime) -> Optional[dict[str, Any]]:
        self._execute(
            """
            UPDATE character_goals
            SET failed_at = %s, fail_reason = %s
            WHERE id = %s AND completed_at IS NULL AND failed_at IS NULL
            """,
            (now, reason, goal_id),
        )
        return self.get_goal(goal_id)

    def fail_stale_wants(self, *, created_before: datetime, reason: str, now: datetime) -> int:
        return self._execute(
            """
            UPDATE character_goals
            SET failed_at = %s, fail_reason = %s
            WHERE goal_type = 'want' AND completed_at IS NULL AND failed_at IS NULL AND created_at < %s
            """,
            (now, reason, created_before),
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
def _backend() -> GoalStore:
    database_url = _database_url()
    if database_url and database_url.startswith(("postgres://", "postgresql://")):
        return PostgresGoalStore(database_url)
    return SQLiteGoalStore(_resolve_sqlite_path(database_url))


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def init_db() -> None:
    _backend().init_db()


def create_goal(
    *,
    character_name: str,
    goal_text: str,
    goal_type: str = "goal",
    scope: Optional[str] = None,
    priority: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Create a goal, first failing every active goal of the same owner and scope."""
    created_at = now or utc_now()
    normalized_type = _normalize_goal_type(goal_type)
    resolved_scope = str(scope or normalized_type).strip()
    if priority is None:
        priority = DEFAULT_WANT_PRIORITY if normalized_type == "want" else DEFAULT_GOAL_PRIORITY
    backend = _backend()
    backend.fail_active_in_scope(
        character_name=character_name,
        scope=resolved_scope,
        reason=SUPERSEDED_REASON,
        now=created_at,
    )
    return backend.insert_goal(
        {
            "id": str(uuid.uuid4()),
            "character_name": character_name,
            "goal_text": str(goal_text).strip(),
            "goal_type": normalized_type,
            "scope": resolved_scope,
            "priority": int(priority),
            "created_at": created_at,
        }
    )


def get_goal(*, goal_id: str) -> Optional[dict[str, Any]]:
    return _backend().get_goal(goal_id)


def list_goals(
    *,
    character_name: str,
    active_only: bool = True,
    goal_type: Optional[str] = None,
    limit: int = 50,
) -> list[dict[str, Any]]:
    bounded_limit = max(1, min(int(limit), 200))
    return _backend().list_goals(
        character_name=character_name,
        active_only=active_only,
        goal_type=goal_type,
        limit=bounded_limit,
    )


def has_active_want_mentioning(*, character_name: str, text: str) -> bool:
    needle = str(text or "").strip().lower()
    if not needle:
        return False
    wants = _backend().list_goals(character_name=character_name, active_only=True, goal_type="want", limit=200)
    return any(needle in want["goal_text"].lower() for want in wants)


def update_progress(*, goal_id: str, progress: int, now: Optional[datetime] = None) -> Optional[dict[str, Any]]:
    bounded = _clamp_progress(progress)
    completed_at = (now or utc_now()) if bounded >= 100 else None
    return _backend().set_progress(goal_id=goal_id, progress=bounded, completed_at=completed_at)


def complete_goal(*, goal_id: str, now: Optional[datetime] = None) -> Optional[dict[str, Any]]:
    return _backend().complete_goal(goal_id=goal_id, now=now or utc_now())


def fail_goal(*, goal_id: str, reason: str, now: Optional[datetime] = None) -> Optional[dict[str, Any]]:
    return _backend().fail_goal(goal_id=goal_id, reason=str(reason or "failed"), now=now or utc_now())


def expire_stale_wants(*, created_before: datetime, now: Optional[datetime] = None) -> int:
    return _backend().fail_stale_wants(created_before=created_before, reason=EXPIRED_REASON, now=now or utc_now())
