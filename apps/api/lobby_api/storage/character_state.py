"""Vitals store: energy, patience, mood, location and activity cooldown stamps."""

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

from packages.lobby_core.clock import iso_utc, normalize_timestamp, utc_now
from packages.lobby_core.vitals.activities import DEFAULT_FOCUS, DEFAULT_MOOD, clamp_stat


WORKSPACE_ROOT = Path(__file__).resolve().parents[4]
MIGRATIONS_DIR = WORKSPACE_ROOT / "packages" / "lobby_core" / "db" / "migrations"

STATE_FIELDS = (
    "energy",
    "patience",
    "mood",
    "current_focus",
    "is_human",
    "interactions_today",
    "last_activity_at",
    "activity_log",
)


def human_characters() -> set[str]:
    raw = os.environ.get("LOBBY_HUMAN_CHARACTERS", "")
    return {part.strip() for part in raw.split(",") if part.strip()}


def _json_object(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
            if isinstance(parsed, dict):
                return parsed
        except Exception:
            return {}
    return {}


def _state_row(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "character_name": str(row.get("character_name") or ""),
        "energy": int(row.get("energy") or 0),
        "patience": int(row.get("patience") or 0),
        "mood": str(row.get("mood") or DEFAULT_MOOD),
        "current_focus": str(row.get("current_focus") or DEFAULT_FOCUS),
        "is_human": bool(row.get("is_human")),
        "interactions_today": int(row.get("interactions_today") or 0),
        "last_activity_at": normalize_timestamp(row.get("last_activity_at")),
        "activity_log": _json_object(row.get("activity_log")),
        "updated_at": normalize_timestamp(row.get("updated_at")),
    }


def _clean_changes(changes: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key in STATE_FIELDS:
        if key not in changes or changes[key] is None:
            continue
        value = changes[key]
        if key in {"energy", "patience"}:
            value = clamp_stat(value)
        elif key == "interactions_today":
            value = max(0, int(value))
        elif key == "is_human":
            value = bool(value)
        elif key in {"mood", "current_focus"}:
            value = str(value).strip()
        values[key] = value
    return values


class CharacterStateStore(ABC):
    @abstractmethod
    def init_db(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_state(self, character_name: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_states(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def insert_state(self, record: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def update_state(self, *, character_name: str, values: dict[str, Any], now: datetime) -> Optional[dict[str, Any]]:
        raise NotImplementedError


class SQLiteCharacterStateStore(CharacterStateStore):
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
                CREATE TABLE IF NOT EXISTS character_state (
                  character_name TEXT PRIMARY KEY,
                  energy INTEGER NOT NULL DEFAULT 100 CHECK (energy BETWEEN 0 AND 100),
                  patience INTEGER NOT NULL DEFAULT 100 CHECK (patience BETWEEN 0 AND 100),
                  mood TEXT NOT NULL DEFAULT 'neutral',
                  current_focus TEXT NOT NULL DEFAULT 'the_floor',
                  is_human INTEGER NOT NULL DEFAULT 0,
                  interactions_today INTEGER NOT NULL DEFAULT 0,
                  last_activity_at TEXT,
                  activity_log TEXT NOT NULL DEFAULT '{}',
                  updated_at TEXT NOT NULL
                )
                """
            )
        self._initialized = True

    def get_state(self, character_name: str) -> Optional[dict[str, Any]]:
        self.init_db()
        row = self._connect().execute(
            "SELECT * FROM character_state WHERE character_name = ?",
            (character_name,),
        ).fetchone()
        return _state_row(dict(row)) if row else None

    def list_states(self) -> list[dict[str, Any]]:
        self.init_db()
        rows = self._connect().execute("SELECT * FROM character_state ORDER BY character_name ASC").fetchall()
        return [_state_row(dict(r)) for r in rows]

    def insert_state(self, record: dict[str, Any]) -> dict[str, Any]:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO character_state (
                  character_name, energy, patience, mood, current_focus, is_human,
                  interactions_today, last_activity_at, activity_log, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, NULL, '{}', ?)
                """,
                (
                    record["character_name"],
                    int(record["energy"]),
                    int(record["patience"]),
                    record["mood"],
                    record["current_focus"],
                    1 if record["is_human"] else 0,
                    iso_utc(record["updated_at"]),
                ),
            )
        return self.get_state(record["character_name"]) or {}

    def update_state(self, *, character_name: str, values: dict[str, Any], now: datetime) -> Optional[dict[str, Any]]:
        self.init_db()
        params: dict[str, Any] = dict(values)
        if "is_human" in params:
            params["is_human"] = 1 if params["is_human"] else 0
        if "last_activity_at" in params:
            params["last_activity_at"] = iso_utc(params["last_activity_at"])
        if "activity_log" in params:
            params["activity_log"] = json.dumps(params["activity_log"], separators=(",", ":"))
        params["updated_at"] = iso_utc(now)
        assignments = ", ".join(f"{key} = ?" for key in params)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE character_state SET {assignments} WHERE character_name = ?",
                (*params.values(), character_name),
            )
        return self.get_state(character_name)


class PostgresCharacterStateStore(CharacterStateStore):
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
                return [_state_row(dict(r)) for r in cur.fetchall()] if cur.description else []

    def get_state(self, character_name: str) -> Optional[dict[str, Any]]:
        rows = self._rows("SELECT * FROM character_state WHERE character_name = %s", (character_name,))
        return rows[0] if rows else None

    def list_states(self) -> list[dict[str, Any]]:
        return self._rows("SELECT * FROM character_state ORDER BY character_name ASC", ())

    def insert_state(self, record: dict[str, Any]) -> dict[str, Any]:
        self._rows(
            """
            INSERT INTO character_state (
              character_name, energy, patience, mood, current_focus, is_human, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (character_name) DO NOTHING
            """,
            (
                record["character_name"],
                int(record["energy"]),
                int(record["patience"]),
                record["mood"],
                record["current_focus"],
                bool(record["is_human"]),
                record["updated_at"],
            ),
        )
        return self.get_state(record["character_name"]) or {}

    def update_state(self, *, character_name: str, values: dict[str, Any], now: datetime) -> Optional[dict[str, Any]]:
        params: dict[str, Any] = dict(values)
        placeholders: dict[str, str] = {key: "%s" for key in params}
        if "activity_log" in params:
            params["activity_log"] = json.dumps(params["activity_log"])
            placeholders["activity_log"] = "%s::jsonb"
        params["updated_at"] = now
        placeholders["updated_at"] = "%s"
        assignments = ", ".join(f"{key} = {placeholders[key]}" for key in params)
        rows = self._rows(
            f"UPDATE character_state SET {assignments} WHERE character_name = %s RETURNING *",
            (*params.values(), character_name),
        )
        return rows[0] if rows else None


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
def _backend() -> CharacterStateStore:
    database_url = _database_url()
    if database_url and database_url.startswith(("postgres://", "postgresql://")):
        return PostgresCharacterStateStore(database_url)
    return SQLiteCharacterStateStore(_resolve_sqlite_path(database_url))


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def init_db() -> None:
    _backend().init_db()


def get_state(*, character_name: str) -> Optional[dict[str, Any]]:
    return _backend().get_state(character_name)


def list_states() -> list[dict[str, Any]]:
    return _backend().list_states()


def ensure_state(
    *,
    character_name: str,
    energy: int = 100,
    patience: int = 100,
    mood: str = DEFAULT_MOOD,
    current_focus: str = DEFAULT_FOCUS,
    is_human: Optional[bool] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Return the vitals row for ``character_name``, creating it with defaults when absent."""
    existing = _backend().get_state(character_name)
    if existing is not None:
        return existing
    name = str(character_name).strip()
    return _backend().insert_state(
        {
            "character_name": name,
            "energy": clamp_stat(energy),
            "patience": clamp_stat(patience),
            "mood": str(mood or DEFAULT_MOOD),
            "current_focus": str(current_focus or DEFAULT_FOCUS),
            "is_human": name in human_characters() if is_human is None else bool(is_human),
            "updated_at": now or utc_now(),
        }
    )


def update_state(
    *,
    character_name: str,
    changes: dict[str, Any],
    now: Optional[datetime] = None,
) -> Optional[dict[str, Any]]:
    values = _clean_changes(changes)
    if not values:
        return _backend().get_state(character_name)
    return _backend().update_state(character_name=character_name, values=values, now=now or utc_now())
