"""Dialogue message log feeding the conversation sweep window."""

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
DEFAULT_CHANNEL = "floor"


def _message_row(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row.get("id") or ""),
        "speaker": str(row.get("speaker") or ""),
        "content": str(row.get("content") or ""),
        "channel": str(row.get("channel") or DEFAULT_CHANNEL),
        "created_at": normalize_timestamp(row.get("created_at")),
    }


class DialogueStore(ABC):
    @abstractmethod
    def init_db(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def insert_message(self, record: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_recent_messages(
        self,
        *,
        channel: Optional[str],
        since: Optional[datetime],
        limit: int,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError


class SQLiteDialogueStore(DialogueStore):
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
                CREATE TABLE IF NOT EXISTS dialogue_messages (
                  id TEXT PRIMARY KEY,
                  speaker TEXT NOT NULL,
                  content TEXT NOT NULL,
                  channel TEXT NOT NULL DEFAULT 'floor',
                  created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_dialogue_messages_channel_created "
                "ON dialogue_messages(channel, created_at DESC)"
            )
        self._initialized = True

    def insert_message(self, record: dict[str, Any]) -> dict[str, Any]:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO dialogue_messages (id, speaker, content, channel, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    record["id"],
                    record["speaker"],
                    record["content"],
                    record["channel"],
                    iso_utc(record["created_at"]),
                ),
            )
            row = conn.execute("SELECT * FROM dialogue_messages WHERE id = ?", (record["id"],)).fetchone()
        return _message_row(dict(row))

    def list_recent_messages(
        self,
        *,
        channel: Optional[str],
        since: Optional[datetime],
        limit: int,
    ) -> list[dict[str, Any]]:
        self.init_db()
        clauses: list[str] = []
        params: list[Any] = []
        if channel:
            clauses.append("channel = ?")
            params.append(channel)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(iso_utc(since))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._connect().execute(
            f"SELECT * FROM dialogue_messages {where} ORDER BY created_at DESC LIMIT ?",
            (*params, int(limit)),
        ).fetchall()
        return [_message_row(dict(r)) for r in reversed(rows)]


class PostgresDialogueStore(DialogueStore):
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

    def insert_message(self, record: dict[str, Any]) -> dict[str, Any]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO dialogue_messages (id, speaker, content, channel, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        record["id"],
                        record["speaker"],
                        record["content"],
                        record["channel"],
                        record["created_at"],
                    ),
                )
                row = cur.fetchone()
        return _message_row(dict(row))

    def list_recent_messages(
        self,
        *,
        channel: Optional[str],
        since: Optional[datetime],
        limit: int,
    ) -> list[dict[str, Any]]:
        self.init_db()
        clauses: list[str] = []
        params: list[Any] = []
        if channel:
            clauses.append("channel = %s")
            params.append(channel)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT * FROM dialogue_messages {where} ORDER BY created_at DESC LIMIT %s",
                    (*params, int(limit)),
                )
                rows = cur.fetchall()
        return [_message_row(dict(r)) for r in reversed(rows)]


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
def _backend() -> DialogueStore:
    database_url = _database_url()
    if database_url and database_url.startswith(("postgres://", "postgresql://")):
        return PostgresDialogueStore(database_url)
    return SQLiteDialogueStore(_resolve_sqlite_path(database_url))


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def init_db() -> None:
    _backend().init_db()


def append_message(
    *,
    speaker: str,
    content: str,
    channel: str = DEFAULT_CHANNEL,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    return _backend().insert_message(
        {
            "id": str(uuid.uuid4()),
            "speaker": str(speaker).strip(),
            "content": str(content),
            "channel": str(channel or DEFAULT_CHANNEL).strip(),
            "created_at": now or utc_now(),
        }
    )


def list_recent_messages(
    *,
    channel: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 30,
) -> list[dict[str, Any]]:
    """Most recent ``limit`` messages, returned oldest first."""
    bounded_limit = max(1, min(int(limit), 500))
    return _backend().list_recent_messages(channel=channel, since=since, limit=bounded_limit)
