"""
Paddle Arena Web Server (FastAPI)

Hosts the session scheduler behind a small JSON API. The fixed-rate loop
runs as a background task for the lifetime of the app; every request is a
thin call into the scheduler.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException

from scheduler import (
    DEFAULT_LINGER_MS,
    DEFAULT_MAX_CATCH_UP,
    DEFAULT_TICK_HZ,
    SessionNotFoundError,
    SessionScheduler,
)

logger = logging.getLogger(__name__)

# ── Settings ────────────────────────────────────────────────────────────────

HOST = os.getenv("PADDLE_ARENA_HOST", "0.0.0.0")
PORT = int(os.getenv("PADDLE_ARENA_PORT", "8000"))
TICK_HZ = float(os.getenv("PADDLE_ARENA_TICK_HZ", str(DEFAULT_TICK_HZ)))
MAX_CATCH_UP = int(os.getenv("PADDLE_ARENA_MAX_CATCH_UP", str(DEFAULT_MAX_CATCH_UP)))
LINGER_MS = float(os.getenv("PADDLE_ARENA_LINGER_MS", str(DEFAULT_LINGER_MS)))

# ── Scheduler ───────────────────────────────────────────────────────────────

scheduler = SessionScheduler()


# ── Lifespan (startup/shutdown) ─────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(scheduler.run(TICK_HZ, MAX_CATCH_UP, LINGER_MS))
    yield
    task.cancel()
    scheduler.stop_all()


app = FastAPI(lifespan=lifespan)


def _not_found(exc: SessionNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(exc))


# ── Sessions ────────────────────────────────────────────────────────────────

@app.post("/sessions", status_code=201)
async def create_session(payload: Optional[Dict[str, Any]] = Body(default=None)):
    payload = dict(payload or {})
    seed = payload.pop("seed", None)
    if seed is not None and not isinstance(seed, int):
        raise HTTPException(status_code=422, detail="seed must be an integer")
    try:
        session_id = scheduler.create(payload, seed=seed)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return scheduler.query(session_id)


@app.get("/sessions")
async def list_sessions():
    return scheduler.status()


@app.delete("/sessions")
async def stop_all_sessions():
    return {"stopped": scheduler.stop_all()}


@app.get("/sessions/{session_id}")
async def get_session(session_id: str, debug: bool = False):
    try:
        return scheduler.query(session_id, include_debug=debug)
    except SessionNotFoundError as exc:
        raise _not_found(exc)


@app.delete("/sessions/{session_id}")
async def stop_session(session_id: str):
    try:
        return scheduler.stop(session_id)
    except SessionNotFoundError as exc:
        raise _not_found(exc)


@app.post("/sessions/{session_id}/tick")
async def tick_session(session_id: str, payload: Optional[Dict[str, Any]] = Body(default=None)):
    """Advance one step. Body: {"inputs": {"2": {"up": true, "down": false}}}."""
    inputs = (payload or {}).get("inputs") or {}
    if not isinstance(inputs, dict):
        raise HTTPException(status_code=422, detail="inputs must be an object keyed by player")
    try:
        events = scheduler.tick(session_id, inputs)
        return {"events": events, "state": scheduler.query(session_id)}
    except SessionNotFoundError as exc:
        raise _not_found(exc)


@app.post("/sessions/{session_id}/input")
async def set_input(session_id: str, payload: Dict[str, Any] = Body(...)):
    """Hold a human intent. Body: {"player": 2, "up": false, "down": true}."""
    try:
        player = int(payload.get("player", 0))
    except (TypeError, ValueError):
        raise HTTPException(status_code=422, detail="player must be 1 or 2")
    try:
        intent = scheduler.set_input(session_id, player, payload)
    except SessionNotFoundError as exc:
        raise _not_found(exc)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"player": player, "up": intent.up, "down": intent.down}


@app.post("/sessions/{session_id}/speed-boost")
async def speed_boost(session_id: str):
    try:
        return {"speed_multiplier": scheduler.apply_speed_boost(session_id)}
    except SessionNotFoundError as exc:
        raise _not_found(exc)


@app.patch("/sessions/{session_id}/npc/{player}")
async def update_npc(session_id: str, player: int, payload: Dict[str, Any] = Body(...)):
    try:
        config = scheduler.update_npc_config(session_id, player, payload)
    except SessionNotFoundError as exc:
        raise _not_found(exc)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"player": player, "npc": None if config is None else {
        "mode": config.mode, "difficulty": config.difficulty, "enabled": config.enabled,
    }}


# ── Run with uvicorn ────────────────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("server:app", host=HOST, port=PORT, reload=False)
