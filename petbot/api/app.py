from __future__ import annotations

import asyncio
import logging
import os
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pandas as pd
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from petbot.bots.registry import BotRegistry, NoBotAvailable
from petbot.orchestrator.service import DuplicateRequest, Orchestrator, RequestNotFound, ValidationError
from petbot.orchestrator.state_machine import InvalidTransition
from petbot.orchestrator.store import build_store
from petbot.platform import build_platform
from petbot.utils import database
from petbot.utils.config_loader import load_config, load_orchestrator_settings

logger = logging.getLogger(__name__)

_orchestrator: Orchestrator | None = None

# Thread pool for blocking DB reads so they don't freeze the event loop.
_db_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="db_ro")


def _require_orchestrator() -> Orchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Bot trading service not ready")
    return _orchestrator


def _df_to_records(df: pd.DataFrame) -> list[dict[str, Any]]:
    if df is None or df.empty:
        return []
    return jsonable_encoder(df.to_dict(orient="records"))


app = FastAPI(
    title="PetBot Trading API",
    version="0.1.0",
)


@app.on_event("startup")
async def startup_event():
    global _orchestrator
    cfg = load_config()
    record_events = str(os.environ.get("PETBOT_DISABLE_EVENT_LOG", "")).strip() not in {"1", "true", "TRUE", "yes", "YES"}

    orchestrator = Orchestrator(
        registry=BotRegistry.from_config(cfg),
        store=build_store(cfg),
        platform=build_platform(cfg),
        settings=load_orchestrator_settings(cfg),
        record_events=record_events,
    )
    await orchestrator.start()
    _orchestrator = orchestrator
    logger.info(
        "Orchestrator started (platform=%s, store=%s)",
        cfg["platform"].get("mode"),
        (cfg.get("store") or {}).get("backend", "memory"),
    )


@app.on_event("shutdown")
async def shutdown_event():
    global _orchestrator
    if _orchestrator:
        await _orchestrator.stop()
        _orchestrator = None
        database.close_write_conn()
        logger.info("Orchestrator stopped")


app.add_middleware(
    CORSMiddleware,
    allow_origins=list((load_config().get("server") or {}).get("cors_origins") or []),
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler to catch unhandled errors and return a clean JSON response.
    """
    logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}")
    logger.debug(traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={
            "detail": f"Internal server error: {type(exc).__name__}",
            "message": str(exc)[:200],
        },
    )


async def _run_in_executor(func, *args, timeout_seconds: float = 3.0, **kwargs):
    """
    Run a blocking DB read in the thread pool with a timeout.
    Returns None on timeout or failure so read endpoints degrade to empty results.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(_db_executor, lambda: func(*args, **kwargs)),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Database call timed out after {timeout_seconds}s: {func.__name__}")
        return None
    except Exception as e:
        logger.warning(f"Database call failed: {func.__name__}: {e}")
        return None


def _call(func, *args: Any, unavailable: str = "No trading bots available. Please try again later.") -> Any:
    """Run an orchestrator operation, mapping domain errors onto HTTP status codes."""
    try:
        return func(*args)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except RequestNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except (InvalidTransition, DuplicateRequest) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except NoBotAvailable as e:
        raise HTTPException(status_code=503, detail=unavailable) from e


def _trade_id(payload: dict[str, Any]) -> str:
    trade_id = payload.get("tradeId")
    if not trade_id:
        raise HTTPException(status_code=400, detail="Trade ID required")
    return str(trade_id)


@app.get("/api/health")
async def health() -> dict[str, Any]:
    db_ok = bool(await _run_in_executor(database.check_db))
    db_error = None if db_ok else "database check failed or timed out"
    return {
        "status": "ok" if _orchestrator is not None else "starting",
        "db_path": database.DB_PATH,
        "db_ok": db_ok,
        "db_error": db_error,
    }


@app.post("/api/bot-trading/initiate")
async def initiate_trade(payload: dict[str, Any]) -> dict[str, Any]:
    orch = _require_orchestrator()
    return jsonable_encoder(_call(orch.initiate_trade, payload))


@app.post("/api/bot-trading/friend-request")
async def friend_request(payload: dict[str, Any]) -> dict[str, Any]:
    orch = _require_orchestrator()
    return _call(orch.send_friend_request, _trade_id(payload))


@app.get("/api/bot-trading/status/{trade_id}")
async def trade_status(trade_id: str) -> dict[str, Any]:
    orch = _require_orchestrator()
    return jsonable_encoder(_call(orch.get_trade, trade_id))


@app.post("/api/bot-trading/join-server")
async def join_server(payload: dict[str, Any]) -> dict[str, Any]:
    orch = _require_orchestrator()
    server_id = payload.get("serverId")
    return _call(orch.join_server, _trade_id(payload), str(server_id) if server_id else None)


@app.post("/api/bot-trading/execute")
async def execute_trade(payload: dict[str, Any]) -> dict[str, Any]:
    orch = _require_orchestrator()
    return _call(orch.execute_trade, _trade_id(payload))


@app.get("/api/bot-trading/instructions/{trade_id}")
async def trade_instructions(trade_id: str) -> dict[str, Any]:
    orch = _require_orchestrator()
    return {"tradeId": trade_id, "instructions": _call(orch.buyer_instructions, trade_id)}


@app.post("/api/bot-trading/custody/initiate")
async def initiate_custody(payload: dict[str, Any]) -> dict[str, Any]:
    orch = _require_orchestrator()
    out = _call(orch.initiate_custody, payload, unavailable="No custody bots available. Please try again later.")
    return jsonable_encoder(out)


@app.get("/api/bot-trading/custody/status/{custody_id}")
async def custody_status(custody_id: str) -> dict[str, Any]:
    orch = _require_orchestrator()
    return jsonable_encoder(_call(orch.get_custody, custody_id))


@app.get("/api/bot-trading/bots/{game_id}")
async def game_bots(game_id: str) -> dict[str, Any]:
    """Bots serving a game plus the current estimated wait."""
    orch = _require_orchestrator()
    bots = orch.registry.bots_for_game(game_id)
    if not bots:
        raise HTTPException(status_code=404, detail=f"No bots configured for game {game_id}")
    return {
        "gameId": game_id,
        "gameName": orch.registry.game_name(game_id),
        "bots": [b.to_dict() for b in bots],
        "estimatedWaitMinutes": orch.registry.estimated_wait_minutes(game_id),
    }


@app.get("/api/history/events")
async def history_events(
    limit: int = Query(default=200, ge=1, le=2000),
    request_id: str | None = Query(default=None),
) -> list[dict[str, Any]]:
    """DB-backed status transition log."""
    df = await _run_in_executor(database.get_events, limit=limit, request_id=request_id)
    return _df_to_records(df)
