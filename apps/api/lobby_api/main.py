"""FastAPI entrypoint for the lobby memory and relationship engine."""

from __future__ import annotations

import logging
import os
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from packages.lobby_core.clock import utc_now_iso

from .routers.breakroom import router as breakroom_router
from .routers.characters import router as characters_router
from .routers.dialogue import router as dialogue_router
from .routers.jobs import router as jobs_router
from .routers.llm import router as llm_router
from .routers.relationships import router as relationships_router
from .services.heartbeat_scheduler import start_heartbeat_scheduler, stop_heartbeat_scheduler
from .storage.character_state import init_db as init_state_db
from .storage.dialogue import init_db as init_dialogue_db
from .storage.goals import init_db as init_goals_db
from .storage.llm_control import init_db as init_llm_db
from .storage.lobby_settings import get_setting
from .storage.lobby_settings import init_db as init_settings_db
from .storage.memories import init_db as init_memories_db
from .storage.relationships import init_db as init_relationships_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("lobby_api")


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


app = FastAPI(title="Lobby Consequence Engine API", version="0.1.0")

_cors_origins = [o.strip() for o in os.environ.get("LOBBY_CORS_ORIGINS", "*").split(",")]
_cors_allow_credentials = "*" not in _cors_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(characters_router)
app.include_router(relationships_router)
app.include_router(breakroom_router)
app.include_router(dialogue_router)
app.include_router(jobs_router)
app.include_router(llm_router)

_STORES = (
    ("memories", init_memories_db),
    ("relationships", init_relationships_db),
    ("goals", init_goals_db),
    ("character state", init_state_db),
    ("settings", init_settings_db),
    ("dialogue", init_dialogue_db),
    ("llm control", init_llm_db),
)


@app.on_event("startup")
def startup() -> None:
    logger.info("[STARTUP] Lobby API starting up at %s", utc_now_iso())
    for label, init in _STORES:
        try:
            logger.info("[STARTUP] Initializing %s database...", label)
            init()
        except Exception as e:
            logger.error("[STARTUP] Failed to initialize %s database: %s", label, e)
            raise

    if _truthy_env("LOBBY_AUTOSTART_HEARTBEAT", default=False):
        start_heartbeat_scheduler()
        logger.info("[STARTUP] Background heartbeat autostart is enabled")

    logger.info("[STARTUP] Lobby API startup complete")


@app.on_event("shutdown")
def shutdown() -> None:
    stop_heartbeat_scheduler()


@app.get("/healthz")
def healthz():
    logger.debug("[HEALTH] Health check requested")
    try:
        get_setting("healthz")
    except Exception as exc:
        logger.warning("[HEALTH] DB check failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "error", "detail": str(exc)})
    return {"status": "ok"}
