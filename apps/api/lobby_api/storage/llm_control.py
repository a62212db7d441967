"""Storage for evaluation task policies and call telemetry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional
import logging
import os
import sqlite3
import threading

from packages.lobby_core.clock import iso_utc, normalize_timestamp, utc_now
from packages.lobby_core.llm.policy import (
    DEFAULT_TASK_POLICIES,
    TaskPolicy,
    default_policy_for_task,
    normalize_policy_row,
)


logger = logging.getLogger("lobby_api.storage.llm_control")
WORKSPACE_ROOT = Path(__file__).resolve().parents[4]
MIGRATIONS_DIR = WORKSPACE_ROOT / "packages" / "lobby_core" / "db" / "migrations"


def _call_log_row(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": str(row.get("id") or ""),
        "character_name": row.get("character_name"),
        "task_name": str(row.get("task_name") or ""),
        "model_name": str(row.get("model_name") or ""),
        "prompt_tokens": int(row.get("prompt_tokens") or 0),
        "completion_tokens": int(row.get("completion_tokens") or 0),
        "latency_ms": int(row.get("latency_ms") or 0),
        "success": bool(row.get("success", 0)),
        "error_code": row.get("error_code"),
        "created_at": normalize_timestamp(row.get("created_at")),
    }


class LlmControlStore(ABC):
    @abstractmethod
    def init_db(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def upsert_policy(self, policy: TaskPolicy) -> TaskPolicy:
        raise NotImplementedError

    @abstractmethod
    def get_policy(self, task_name: str) -> Optional[TaskPolicy]:
        raise NotImplementedError

    @abstractmethod
    def list_policies(self) -> list[TaskPolicy]:
        raise NotImplementedError

    @abstractmethod
    def insert_call_log(self, record: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_call_logs(
        self,
        *,
        limit: int = 100,
        task_name: Optional[str] = None,
        character_name: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError


class SQLiteLlmControlStore(LlmControlStore):
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
                CREATE TABLE IF NOT EXISTS llm_task_policies (
                  task_name TEXT PRIMARY KEY,
                  model_tier TEXT NOT NULL,
                  max_input_tokens INTEGER NOT NULL,
                  max_output_tokens INTEGER NOT NULL,
                  temperature REAL NOT NULL,
                  timeout_ms INTEGER NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS llm_call_logs (
                  id TEXT PRIMARY KEY,
                  character_name TEXT,
                  task_name TEXT NOT NULL,
                  model_name TEXT NOT NULL,
                  prompt_tokens INTEGER NOT NULL,
                  completion_tokens INTEGER NOT NULL,
                  latency_ms INTEGER,
                  success INTEGER NOT NULL,
                  error_code TEXT,
                  created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_llm_logs_task_created ON llm_call_logs(task_name, created_at DESC)"
            )
        self._initialized = True

    def upsert_policy(self, policy: TaskPolicy) -> TaskPolicy:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO llm_task_policies (
                  task_name, model_tier, max_input_tokens, max_output_tokens,
                  temperature, timeout_ms, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(task_name) DO UPDATE SET
                  model_tier = excluded.model_tier,
                  max_input_tokens = excluded.max_input_tokens,
                  max_output_tokens = excluded.max_output_tokens,
                  temperature = excluded.temperature,
                  timeout_ms = excluded.timeout_ms,
                  updated_at = excluded.updated_at
                """,
                (
                    policy.task_name,
                    policy.model_tier,
                    int(policy.max_input_tokens),
                    int(policy.max_output_tokens),
                    float(policy.temperature),
                    int(policy.timeout_ms),
                    iso_utc(utc_now()),
                ),
            )
            row = conn.execute(
                "SELECT * FROM llm_task_policies WHERE task_name = ?",
                (policy.task_name,),
            ).fetchone()
        return normalize_policy_row(str(row["task_name"]), dict(row))

    def get_policy(self, task_name: str) -> Optional[TaskPolicy]:
        self.init_db()
        row = self._connect().execute(
            "SELECT * FROM llm_task_policies WHERE task_name = ?",
            (task_name,),
        ).fetchone()
        if not row:
            return None
        return normalize_policy_row(str(row["task_name"]), dict(row))

    def list_policies(self) -> list[TaskPolicy]:
        self.init_db()
        rows = self._connect().execute("SELECT * FROM llm_task_policies ORDER BY task_name ASC").fetchall()
        return [normalize_policy_row(str(r["task_name"]), dict(r)) for r in rows]

    def insert_call_log(self, record: dict[str, Any]) -> None:
        self.init_db()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO llm_call_logs (
                  id, character_name, task_name, model_name, prompt_tokens,
                  completion_tokens, latency_ms, success, error_code, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(record["id"]),
                    record.get("character_name"),
                    str(record["task_name"]),
                    str(record["model_name"]),
                    int(record.get("prompt_tokens") or 0),
                    int(record.get("completion_tokens") or 0),
                    int(record.get("latency_ms") or 0),
                    1 if bool(record.get("success", False)) else 0,
                    record.get("error_code"),
                    iso_utc(utc_now()),
                ),
            )

    def list_call_logs(
        self,
        *,
        limit: int = 100,
        task_name: Optional[str] = None,
        character_name: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        self.init_db()
        bounded_limit = max(1, min(int(limit), 500))
        clauses: list[str] = []
        params: list[Any] = []
        if task_name:
            clauses.append("task_name = ?")
            params.append(task_name)
        if character_name:
            clauses.append("character_name = ?")
            params.append(character_name)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._connect().execute(
            f"SELECT * FROM llm_call_logs {where} ORDER BY created_at DESC LIMIT ?",
            (*params, bounded_limit),
        ).fetchall()
        return [_call_log_row(dict(r)) for r in rows]


class PostgresLlmControlStore(LlmControlStore):
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

    def upsert_policy(self, policy: TaskPolicy) -> TaskPolicy:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO llm_task_policies (
                      task_name, model_tier, max_input_tokens, max_output_tokens,
                      temperature, timeout_ms, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, NOW())
                    ON CONFLICT(task_name) DO UPDATE SET
                      model_tier = EXCLUDED.model_tier,
                      max_input_tokens = EXCLUDED.max_input_tokens,
                      max_output_tokens = EXCLUDED.max_output_tokens,
                      temperature = EXCLUDED.temperature,
                      timeout_ms = EXCLUDED.timeout_ms,
                      updated_at = NOW()
                    RETURNING *
                    """,
                    (
                        policy.task_name,
                        policy.model_tier,
                        int(policy.max_input_tokens),
                        int(policy.max_output_tokens),
                        float(policy.temperature),
                        int(policy.timeout_ms),
                    ),
                )
                row = cur.fetchone()
        return normalize_policy_row(str(row["task_name"]), row)

    def get_policy(self, task_name: str) -> Optional[TaskPolicy]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM llm_task_policies WHERE task_name = %s", (task_name,))
                row = cur.fetchone()
        if not row:
            return None
        return normalize_policy_row(str(row["task_name"]), row)

    def list_policies(self) -> list[TaskPolicy]:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT * FROM llm_task_policies ORDER BY task_name ASC")
                rows = cur.fetchall()
        return [normalize_policy_row(str(r["task_name"]), r) for r in rows]

    def insert_call_log(self, record: dict[str, Any]) -> None:
        self.init_db()
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO llm_call_logs (
                      id, character_name, task_name, model_name, prompt_tokens,
                      completion_tokens, latency_ms, success, error_code
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        str(record["id"]),
                        record.get("character_name"),
                        str(record["task_name"]),
                        str(record["model_name"]),
                        int(record.get("prompt_tokens") or 0),
                        int(record.get("completion_tokens") or 0),
                        int(record.get("latency_ms") or 0),
                        bool(record.get("success", False)),
                        record.get("error_code"),
                    ),
                )

    def list_call_logs(
        self,
        *,
        limit: int = 100,
        task_name: Optional[str] = None,
        character_name: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        self.init_db()
        bounded_limit = max(1, min(int(limit), 500))
        clauses: list[str] = []
        params: list[Any] = []
        if task_name:
            clauses.append("task_name = %s")
            params.append(task_name)
        if character_name:
            clauses.append("character_name = %s")
            params.append(character_name)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT * FROM llm_call_logs {where} ORDER BY created_at DESC LIMIT %s",
                    (*params, bounded_limit),
                )
                rows = cur.fetchall()
        return [_call_log_row(dict(r)) for r in rows]


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
def _backend() -> LlmControlStore:
    database_url = _database_url()
    if database_url and database_url.startswith(("postgres://", "postgresql://")):
        return PostgresLlmControlStore(database_url)
    return SQLiteLlmControlStore(_resolve_sqlite_path(database_url))


def reset_backend_cache_for_tests() -> None:
    _backend.cache_clear()


def init_db() -> None:
    _backend().init_db()


def get_llm_policy(task_name: str) -> TaskPolicy:
    stored = _backend().get_policy(task_name)
    if stored is not None:
        return stored
    return default_policy_for_task(task_name)


def list_llm_policies() -> list[TaskPolicy]:
    stored = {policy.task_name: policy for policy in _backend().list_policies()}
    merged: dict[str, TaskPolicy] = {}
    for task_name, default in DEFAULT_TASK_POLICIES.items():
        merged[task_name] = stored.get(task_name, default)
    for task_name, policy in stored.items():
        merged.setdefault(task_name, policy)
    return [merged[name] for name in sorted(merged)]


def upsert_llm_policy(policy: TaskPolicy) -> TaskPolicy:
    saved = _backend().upsert_policy(policy)
    logger.info("[LLM] Policy updated for '%s' (tier=%s)", saved.task_name, saved.model_tier)
    return saved


def insert_call_log(record: dict[str, Any]) -> None:
    _backend().insert_call_log(record)


def list_call_logs(
    *,
    limit: int = 100,
    task_name: Optional[str] = None,
    character_name: Optional[str] = None,
) -> list[dict[str, Any]]:
    return _backend().list_call_logs(limit=limit, task_name=task_name, character_name=character_name)
