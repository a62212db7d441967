"""Heartbeat: run every due engine job, optionally from a background thread."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Optional
import logging
import os
import random
import threading
import uuid

from packages.lobby_core.clock import iso_utc, parse_utc, utc_date_key, utc_now
from packages.lobby_core.llm.evaluator import EvaluationService
from packages.lobby_core.memory.sweep import LAST_SWEEP_SETTING, window_start

from ..storage.dialogue import list_recent_messages
from ..storage.lobby_settings import get_setting_dict, put_setting
from .affinity_decay import run_affinity_decay
from .conversation_sweep import sweep_conversation
from .daily_reset import run_daily_reset
from .memory_guardian import run_memory_guardian
from .memory_review import review_character_memories, reviewable_characters
from .relationship_consequences import process_relationship_events


logger = logging.getLogger("lobby_api.heartbeat")

CONSEQUENCE_INTERVAL = timedelta(minutes=15)
REVIEW_INTERVAL = timedelta(hours=12)
SWEEP_WINDOW = timedelta(minutes=60)
SWEEP_WINDOW_MESSAGES = 30
DAILY_RESET_KEY = "heartbeat_last:daily_reset"
CONSEQUENCE_KEY = "heartbeat_last:relationship_consequences"
GUARDIAN_KEY = "heartbeat_last:memory_guardian"
AFFINITY_DECAY_KEY = "heartbeat_last:affinity_decay"


def _review_key(character_name: str) -> str:
    return f"heartbeat_last:memory_review:{character_name}"


def _daily_reset_hour() -> int:
    try:
        hour = int(os.environ.get("LOBBY_DAILY_RESET_HOUR_UTC", "6"))
    except ValueError:
        hour = 6
    return max(0, min(23, hour))


def _heartbeat_interval_seconds() -> float:
    try:
        seconds = float(os.environ.get("LOBBY_HEARTBEAT_INTERVAL_SECONDS", "60"))
    except ValueError:
        seconds = 60.0
    return max(1.0, min(3600.0, seconds))


def _interval_due(key: str, interval: timedelta, now: datetime) -> bool:
    last = parse_utc(get_setting_dict(key).get("timestamp"))
    return last is None or now - last >= interval


def _stamp(key: str, now: datetime) -> None:
    put_setting(key, {"timestamp": iso_utc(now)})


def _daily_due(key: str, now: datetime) -> bool:
    if now.hour < _daily_reset_hour():
        return False
    return get_setting_dict(key).get("date") != utc_date_key(now)


def _stamp_daily(key: str, now: datetime) -> None:
    put_setting(key, {"date": utc_date_key(now), "timestamp": iso_utc(now)})


def _run_job(name: str, job: Callable[[], dict[str, Any]]) -> dict[str, Any]:
    try:
        return job()
    except Exception as exc:
        logger.exception("[HEARTBEAT] Job %s failed: %s", name, exc)
        return {"ok": False, "reason": "error", "error": f"{exc.__class__.__name__}: {exc}"}


def run_heartbeat(
    *,
    now: Optional[datetime] = None,
    evaluator: Optional[EvaluationService] = None,
    rng: Optional[random.Random] = None,
) -> dict[str, Any]:
    """Run each job whose cadence has elapsed. Cadence lives in settings rows, not in memory."""
    current = now or utc_now()
    ran: dict[str, Any] = {}
    try:
        if _interval_due(CONSEQUENCE_KEY, CONSEQUENCE_INTERVAL, current):
            ran["relationship_consequences"] = _run_job(
                "relationship_consequences",
                lambda: process_relationship_events(now=current, rng=rng),
            )
            _stamp(CONSEQUENCE_KEY, current)

        reviews = []
        for name in reviewable_characters():
            key = _review_key(name)
            if not _interval_due(key, REVIEW_INTERVAL, current):
                continue
            reviews.append(
                _run_job(
                    "memory_review",
                    lambda name=name: review_character_memories(name, evaluator=evaluator, now=current),
                )
            )
            _stamp(key, current)
        if reviews:
            ran["memory_review"] = reviews

        since = window_start(last_sweep=get_setting_dict(LAST_SWEEP_SETTING), now=current, lookback=SWEEP_WINDOW)
        window = list_recent_messages(since=since, limit=SWEEP_WINDOW_MESSAGES)
        ran["conversation_sweep"] = _run_job(
            "conversation_sweep",
            lambda: sweep_conversation(window, evaluator=evaluator, now=current),
        )

        # Chapters are written before the reset deletes low-value memories.
        if _daily_due(GUARDIAN_KEY, current):
            ran["memory_guardian"] = _run_job(
                "memory_guardian",
                lambda: run_memory_guardian(evaluator=evaluator, now=current),
            )
            _stamp_daily(GUARDIAN_KEY, current)

        if _daily_due(AFFINITY_DECAY_KEY, current):
            ran["affinity_decay"] = _run_job("affinity_decay", lambda: run_affinity_decay(now=current, rng=rng))
            _stamp_daily(AFFINITY_DECAY_KEY, current)

        if _daily_due(DAILY_RESET_KEY, current):
            ran["daily_reset"] = _run_job("daily_reset", lambda: run_daily_reset(now=current))
            _stamp_daily(DAILY_RESET_KEY, current)
    except Exception as exc:
        logger.exception("[HEARTBEAT] Heartbeat failed: %s", exc)
        return {"ok": False, "reason": "error", "error": f"{exc.__class__.__name__}: {exc}", "jobs": ran}

    logger.info("[HEARTBEAT] Ran %s", ", ".join(sorted(ran)) or "nothing")
    return {"ok": True, "at": iso_utc(current), "jobs": ran}


class HeartbeatScheduler:
    def __init__(self) -> None:
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._last_loop_started_at: str | None = None
        self._last_loop_finished_at: str | None = None
        self._last_error: str | None = None
        self._last_result: dict[str, Any] | None = None
        self._instance_id = f"heartbeat-{uuid.uuid4().hex[:12]}"

    def start(self) -> bool:
        with self._state_lock:
            if self._thread and self._thread.is_alive():
                return False
            self._stop_event.clear()
            thread = threading.Thread(
                target=self._run_loop,
                name="lobby-heartbeat-scheduler",
                daemon=True,
            )
            thread.start()
            self._thread = thread
            logger.info("[HEARTBEAT] Background heartbeat started")
            return True

    def stop(self, *, join_timeout_seconds: float = 3.0) -> bool:
        with self._state_lock:
            thread = self._thread
            if not thread:
                return False
            self._stop_event.set()
        thread.join(timeout=max(0.1, float(join_timeout_seconds)))
        with self._state_lock:
            if self._thread is thread:
                self._thread = None
        logger.info("[HEARTBEAT] Background heartbeat stopped")
        return True

    def status(self) -> dict[str, object]:
        with self._state_lock:
            running = bool(self._thread and self._thread.is_alive())
            thread_name = self._thread.name if self._thread else None
        return {
            "running": running,
            "thread_name": thread_name,
            "instance_id": self._instance_id,
            "interval_seconds": _heartbeat_interval_seconds(),
            "last_loop_started_at": self._last_loop_started_at,
            "last_loop_finished_at": self._last_loop_finished_at,
            "last_error": self._last_error,
            "last_result": self._last_result,
        }

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._last_loop_started_at = iso_utc(utc_now())
            try:
                result = run_heartbeat()
                self._last_result = result
                if not result.get("ok"):
                    self._last_error = str(result.get("error") or result.get("reason"))
            except Exception as exc:
                self._last_error = f"{exc.__class__.__name__}: {exc}"
                logger.exception("[HEARTBEAT] Scheduler loop error: %s", exc)
            self._last_loop_finished_at = iso_utc(utc_now())
            self._stop_event.wait(_heartbeat_interval_seconds())


_SCHEDULER = HeartbeatScheduler()


def start_heartbeat_scheduler() -> bool:
    return _SCHEDULER.start()


def stop_heartbeat_scheduler() -> bool:
    return _SCHEDULER.stop()


def heartbeat_scheduler_status() -> dict[str, object]:
    return _SCHEDULER.status()
