"""Relationship ledger (directed affinity rows) and the relationship event log."""

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
from packages.lobby_core.social.affinity import NEUTRAL_LABEL, clamp_affinity
from packages.lobby_core.social.events import RAW_INTERACTION, initial_processed, normalize_origin


WORKSPACE_ROOT = Path(__file__).resolve().parents[4]
MIGRATIONS_DIR = WORKSPACE_ROOT / "packages" / "lobby_core" / "db" / "migrations"


def _relationship_row(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row.get("id") or ""),
        "character_name": str(row.get("character_name") or ""),
        "target_name": str(row.get("target_name") or ""),
        "affinity": int(row.get("affinity") or 0),
        "seed_affinity": int(row.get("seed_affinity") or 0),
        "relationship_label": str(row.get("relationship_label") or NEUTRAL_LABEL),
        "created_at": normalize_timestamp(row.get("created_at")),
        "updated_at": normalize_timestamp(row.get("updated_at")),
    }


def _event_row(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row.get("id") or ""),
        "character_name": str(row.get("character_name") or ""),
        "target_name": str(row.get("target_name") or ""),
        "event_type": str(row.get("event_type") or ""),
        "intensity": int(row.get("intensity") or 0),
        "affinity_delta": int(row.get("affinity_delta") or 0),
        "context": str(row.get("context") or ""),
        "origin": str(row.get("origin") or ""),
        "processed": bool(row.get("processed")),
        "processed_at": normalize_timestamp(row.get("processed_at")),
        "created_at": normalize_timestamp(row.get("created_at")),
    }


class RelationshipStore(ABC):
    @abstractmethod
    def init_db(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_relationship(self, *, character_name: str, target_name: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_relationships(self, *, character_name: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def list_all_relationships(self) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def latest_event_at(self, *, character_name: str, target_name: str, origin: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def sum_event_deltas(
        self,
        *,
        character_name: str,
        target_name: str,
        event_type: str,
        since: datetime,
    ) -> int:
        raise NotImplementedError

    @abstractmethod
    def insert_relationship_if_absent(self, record: dict[str, Any]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def update_affinity(
        self,
        *,
        character_name: str,
        target_name: str,
        affinity: int,
        label: str,
        now: datetime,
    ) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def insert_event(self, record: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_unprocessed_events(self, *, since: datetime, limit: int) -> list[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def mark_event_processed(self, *, event_id: str, now: datetime) -> bool:
        raise NotImplementedError

    @abstractmethod
    def expire_stale_events(self, *, before: datetime, now: datetime) -> int:
        raise NotImplementedError

    @abstractmethod
    def list_events(
        self,
        *,
        character_name: Optional[str],
        processed: Optional[bool],
        limit: int,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError


class SQLiteRelationshipStore(RelationshipStore):
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
                CREATE TABLE IF NOT EXISTS character_relationships (
                  id TEXT PRIMARY KEY,
                  character_name TEXT NOT NULL,
                  target_name TEXT NOT NULL,
                  affinity INTEGER NOT NULL DEFAULT 0 CHECK (affinity BETWEEN -100 AND 100),
                  seed_affinity INTEGER NOT NULL DEFAULT 0,
                  relationship_label TEXT NOT NULL DEFAULT 'acquaintance',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE (character_name, target_name)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS relationship_events (
                  id TEXT PRIMARY KEY,
                  character_name TEXT NOT NULL,
                  target_name TEXT NOT NULL,
                  event_type TEXT NOT NULL,
                  intensity INTEGER NOT NULL DEFAULT 0,
                  affinity_delta INTEGER NOT NULL DEFAULT 0,
                  context TEXT NOT NULL DEFAULT '',
                  origin TEXT NOT NULL DEFAULT 'raw_interaction',
                  processed INTEGER NOT NULL DEFAULT 0,
                  processed_at TEXT,
                  created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_relationship_events_pending "
                "ON relationship_events(processed, created_at ASC)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_relationship_events_pair_created "
                "ON relationship_events(character_name, target_name, created_at DESC)"
            )
        self._initialized = True

    def get_relationship(self, *, character_name: str, target_name: str) -> Optional[dict[str, Any]]:
        self.init_db()
        row = self._connect().execute(
            "SELECT * FROM character_relationships WHERE character_name = ? AND target_name = ?",
            (character_name, target_name),
        ).fetchone()
        return _relationship_row(dict(row)) if row else None

    def list_relationships(self, *, character_name: str) -> list[dict[str, Any]]:
        self.init_db()
        rows = self._connect().execute(
            "SELECT * FROM character_relationships WHERE character_name = ? ORDER BY affinity DESC, target_name ASC",
            (character_name,),
        ).fetchall()
        return [_relationship_row(dict(r)) for r in rows]

    def list_all_relationships(self) -> list[dict[str, Any]]:
        self.init_db()
        rows = self._connect().execute(
            "SELECT * FROM character_relationships ORDER BY character_name ASC, target_name ASC"
        ).fetchall()
        return [_relationship_row(dict(r)) for r in rows]

    def latest_event_at(self, *, character_name: str, target_name: str, origin: str) -> Optional[str]:
        self.init_db()
        row = self._connect().execute(
            """
            SELECT MAX(created_at) AS latest FROM relationship_events
            WHERE character_name = ? AND target_name = ? AND origin = ?
            """,
            (character_name, target_name, origin),
        ).fetchone()
        return normalize_timestamp(row["latest"]) if row else None

    def sum_event_deltas(
        self,
        *,
        character_name: str,
        target_name: str,
        event_type: str,
        since: datetime,
    ) -> int:
        self.init_db()
        row = self._connect().execute(
            """
            SELECT COALESCE(SUM(affinity_delta), 0) AS total FROM relationship_events
            WHERE character_name = ? AND target_name = ? AND event_type = ? AND created_at >= ?
            """,
            (character_name, target_name, event_type, iso_utc(since)),
        ).fetchone()
        return int(row["total"] or 0) if row else 0

    def insert_relationship_if_absent(self, record: dict[str, Any]) -> bool:
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO character_relationships (
                  id, character_name, target_name, affinity, seed_affinity,
                  relationship_label, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["id"],
                    record["character_name"],
                    record["target_name"],
                    int(record["affinity"]),
                    int(record["seed_affinity"]),
                    record["relationship_label"],
                    iso_utc(record["created_at"]),
                    iso_utc(record["created_at"]),
                ),
            )
        return int(cur.rowcount or 0) > 0

    def update_affinity(
        self,
        *,
        character_name: str,
        target_name: str,
        affinity: int,
        label: str,
        now: datetime,
    ) -> Optional[dict[str, Any]]:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE character_relationships
                SET affinity = ?, relationship_label = ?, updated_at = ?
                WHERE character_name = ? AND target_name = ?
                """,
                (int(affinity), label, iso_utc(now), character_name, target_name),
            )
        return self.get_relationship(character_name=character_name, target_name=target_name)

    def insert_event(self, record: dict[str, Any]) -> dict[str, Any]:
        self.init_db()
        processed_at = record.get("processed_at")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO relationship_events (
                  id, character_name, target_name, event_type, intensity, affinity_delta,
                  context, origin, processed, processed_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record["id"],
                    record["character_name"],
                    record["target_name"],
                    record["event_type"],
                    int(record["intensity"]),
                    int(record["affinity_delta"]),
                    record["context"],
                    record["origin"],
                    1 if record["processed"] else 0,
                    iso_utc(processed_at) if processed_at is not None else None,
                    iso_utc(record["created_at"]),
                ),
            )
            row = conn.execute("SELECT * FROM relationship_events WHERE id = ?", (record["id"],)).fetchone()
        return _event_row(dict(row))

    def list_unprocessed_events(self, *, since: datetime, limit: int) -> list[dict[str, Any]]:
        self.init_db()
        rows = self._connect().execute(
            """
            SELECT * FROM relationship_events
            WHERE processed = 0 AND created_at >= ?
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (iso_utc(since), int(limit)),
        ).fetchall()
        return [_event_row(dict(r)) for r in rows]

    def mark_event_processed(self, *, event_id: str, now: datetime) -> bool:
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE relationship_events SET processed = 1, processed_at = ? WHERE id = ? AND processed = 0",
                (iso_utc(now), event_id),
            )
        return int(cur.rowcount or 0) > 0

    def expire_stale_events(self, *, before: datetime, now: datetime) -> int:
        self.init_db()
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE relationship_events SET processed = 1, processed_at = ? WHERE processed = 0 AND created_at < ?",
                (iso_utc(now), iso_utc(before)),
            )
        return int(cur.rowcount or 0)

    def list_events(
        self,
        *,
        character_name: Optional[str],
        processed: Optional[bool],
        limit: int,
    ) -> list[dict[str, Any]]:
        self.init_db()
        clauses: list[str] = []
        params: list[Any] = []
        if character_name:
            clauses.append("(character_name = ? OR target_name = ?)")
            params.extend([character_name, character_name])
        if processed is not None:
            clauses.append("processed = ?")
            params.append(1 if processed else 0)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._connect().execute(
            f"SELECT * FROM relationship_events {where} ORDER BY created_at DESC LIMIT ?",
            (*params, int(limit)),
        ).fetchall()
        return [_event_row(dict(r)) for r in rows]


class PostgresRelationshipStore(RelationshipStore):
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
                return [dict(r) for r in cur.fetchall()] if cur.description else []

    def _execute(self, sql: str, params: tuple[Any, ...]) -> int:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return int(cur.rowcount or 0)

    def get_relationship(self, *, character_name: str, target_name: str) -> Optional[dict[str, Any]]:
        rows = self._rows(
            "SELECT * FROM character_relationships WHERE character_name = %s AND target_name = %s",
            (character_name, target_name),
        )
        return _relationship_row(rows[0]) if rows else None

    def list_relationships(self, *, character_name: str) -> list[dict[str, Any]]:
        rows = self._rows(
            "SELECT * FROM character_relationships WHERE character_name = %s ORDER BY affinity DESC, target_name ASC",
            (character_name,),
        )
        return [_relationship_row(r) for r in rows]

    def list_all_relationships(self) -> list[dict[str, Any]]:
        rows = self._rows(
            "SELECT * FROM character_relationships ORDER BY character_name ASC, target_name ASC",
            (),
        )
        return [_relationship_row(r) for r in rows]

    def latest_event_at(self, *, character_name: str, target_name: str, origin: str) -> Optional[str]:
        rows = self._rows(
            """
            SELECT MAX(created_at) AS latest FROM relationship_events
            WHERE character_name = %s AND target_name = %s AND origin = %s
            """,
            (character_name, target_name, origin),
        )
        return normalize_timestamp(rows[0]["latest"]) if rows else None

    def sum_event_deltas(
        self,
        *,
        character_name: str,
        target_name: str,
        event_type: str,
        since: datetime,
    ) -> int:
        rows = self._rows(
            """
            SELECT COALESCE(SUM(affinity_delta), 0) AS total FROM relationship_events
            WHERE character_name = %s AND target_name = %s AND event_type = %s AND created_at >= %s
            """,
            (character_name, target_name, event_type, since),
        )
        return int(rows[0]["total"] or 0) if rows else 0

    def insert_relationship_if_absent(self, record: dict[str, Any]) -> bool:
        inserted = self._execute(
            """
            INSERT INTO character_relationships (
              id, character_name, target_name, affinity, seed_affinity,
              relationship_label, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (character_name, target_name) DO NOTHING
            """,
            (
                record["id"],
                record["character_name"],
                record["target_name"],
                int(record["affinity"]),
                int(record["seed_affinity"]),
                record["relationship_label"],
                record["created_at"],
                record["created_at"],
            ),
        )
        return inserted > 0

    def update_affinity(
        self,
        *,
        character_name: str,
        target_name: str,
        affinity: int,
        label: str,
        now: datetime,
    ) -> Optional[dict[str, Any]]:
        rows = self._rows(
            """
            UPDATE character_relationships
            SET affinity = %s, relationship_label = %s, updated_at = %s
            WHERE character_name = %s AND target_name = %s
            RETURNING *
            """,
            (int(affinity), label, now, character_name, target_name),
        )
        return _relationship_row(rows[0]) if rows else None

    def insert_event(self, record: dict[str, Any]) -> dict[str, Any]:
        rows = self._rows(
            """
            INSERT INTO relationship_events (
              id, character_name, target_name, event_type, intensity, affinity_delta,
              context, origin, processed, processed_at, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                record["id"],
                record["character_name"],
                record["target_name"],
                record["event_type"],
                int(record["intensity"]),
                int(record["affinity_delta"]),
                record["context"],
                record["origin"],
                bool(record["processed"]),
                record.get("processed_at"),
                record["created_at"],
            ),
        )
        return _event_row(rows[0])

    def list_unprocessed_events(self, *, since: datetime, limit: int) -> list[dict[str, Any]]:
        rows = self._rows(
            """
            SELECT * FROM relationship_events
            WHERE NOT processed AND created_at >= %s
            ORDER BY created_at ASC
            LIMIT %s
            """,
            (since, int(limit)),
        )
        return [_event_row(r) for r in rows]

    def mark_event_processed(self, *, event_id: str, now: datetime) -> bool:
        updated = self._execute(
            "UPDATE relationship_events SET processed = TRUE, processed_at = %s WHERE id = %s AND NOT processed",
            (now, event_id),
        )
        return updated > 0

    def expire_stale_events(self, *, before: datetime, now: datetime) -> int:
        return self._execute(
            "UPDATE relationship_events SET processed = TRUE, processed_at = %s WHERE NOT processed AND created_at < %s",
            (now, before),
        )

    def list_events(
        self,
        *,
        character_name: Optional[str],
        processed: Optional[bool],
        limit: int,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if character_name:
            clauses.append("(character_name = %s OR target_name = %s)")
            params.extend([character_name, character_name])
        if processed is not None:
            clauses.append("processed = %s")
            params.append(bool(processed))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._rows(
            f"SELECT * FROM relationship_events {where} ORDER BY created_at DESC LIMIT %s",
            (*params, int(limit)),
        )
        return [_event_row(r) for r in rows]


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
def _backend() -> RelationshipStore:
    database_url = _database_url()
    if database_url and database_url.startswith(("postgres://", "postgresql://")):
        return PostgresRelationshipStore(database_url)
    return SQLiteRelationshipStore(_resolve_sqlite_path(database_url))


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def init_db() -> None:
    _backend().init_db()


def get_relationship(*, character_name: str, target_name: str) -> Optional[dict[str, Any]]:
    return _backend().get_relationship(character_name=character_name, target_name=target_name)


def list_relationships(*, character_name: str) -> list[dict[str, Any]]:
    return _backend().list_relationships(character_name=character_name)


def list_all_relationships() -> list[dict[str, Any]]:
    return _backend().list_all_relationships()


def latest_interaction_at(*, character_name: str, target_name: str) -> Optional[str]:
    """Timestamp of the newest raw interaction logged for the directed pair."""
    return _backend().latest_event_at(character_name=character_name, target_name=target_name, origin=RAW_INTERACTION)


def sum_event_deltas(*, character_name: str, target_name: str, event_type: str, since: datetime) -> int:
    return _backend().sum_event_deltas(
        character_name=character_name,
        target_name=target_name,
        event_type=event_type,
        since=since,
    )


def create_relationship_if_absent(
    *,
    character_name: str,
    target_name: str,
    seed_affinity: int = 0,
    now: Optional[datetime] = None,
) -> bool:
    """Insert the directed row unless one already exists. Returns True when created."""
    seed = clamp_affinity(seed_affinity)
    return _backend().insert_relationship_if_absent(
        {
            "id": str(uuid.uuid4()),
            "character_name": character_name,
            "target_name": target_name,
            "affinity": seed,
            "seed_affinity": seed,
            "relationship_label": NEUTRAL_LABEL,
            "created_at": now or utc_now(),
        }
    )


def update_affinity(
    *,
    character_name: str,
    target_name: str,
    affinity: int,
    label: str,
    now: Optional[datetime] = None,
) -> Optional[dict[str, Any]]:
    return _backend().update_affinity(
        character_name=character_name,
        target_name=target_name,
        affinity=clamp_affinity(affinity),
        label=label,
        now=now or utc_now(),
    )


def append_event(
    *,
    character_name: str,
    target_name: str,
    event_type: str,
    intensity: int = 0,
    affinity_delta: int = 0,
    context: str = "",
    origin: str = "raw_interaction",
    processed: bool = False,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    created_at = now or utc_now()
    normalized_origin = normalize_origin(origin)
    is_processed = initial_processed(normalized_origin, processed)
    return _backend().insert_event(
        {
            "id": str(uuid.uuid4()),
            "character_name": character_name,
            "target_name": target_name,
            "event_type": str(event_type or "interaction"),
            "intensity": int(intensity),
            "affinity_delta": int(affinity_delta),
            "context": str(context or ""),
            "origin": normalized_origin,
            "processed": is_processed,
            "processed_at": created_at if is_processed else None,
            "created_at": created_at,
        }
    )


def list_unprocessed_events(*, since: datetime, limit: int) -> list[dict[str, Any]]:
    return _backend().list_unprocessed_events(since=since, limit=limit)


def mark_event_processed(*, event_id: str, now: Optional[datetime] = None) -> bool:
    return _backend().mark_event_processed(event_id=event_id, now=now or utc_now())


def expire_stale_events(*, before: datetime, now: Optional[datetime] = None) -> int:
    return _backend().expire_stale_events(before=before, now=now or utc_now())


def list_events(
    *,
    character_name: Optional[str] = None,
    processed: Optional[bool] = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    bounded_limit = max(1, min(int(limit), 500))
    return _backend().list_events(character_name=character_name, processed=processed, limit=bounded_limit)
