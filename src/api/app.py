from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import traceback
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import pandas as pd
from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.db.repositories.balances import BalanceSnapshotRepository
from src.db.repositories.bot_state import BotStateRepository
from src.db.repositories.decisions import DecisionLogRepository
from src.db.repositories.trades import TradeRepository
from src.db.sqlite import SQLiteDatabase
from src.research.prompts import get_prompt_templates
from src.utils.config_loader import load_config, resolve_database_path

logger = logging.getLogger(__name__)

# Thread pool for blocking DB reads so they don't freeze the event loop.
_db_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="db_ro")

_db: SQLiteDatabase | None = None


def _load_config_or_empty() -> dict[str, Any]:
    try:
        return load_config()
    except Exception as e:
        logger.warning(f"Config unavailable for the status API: {e}")
        return {}


def get_db() -> SQLiteDatabase:
    """Database shared with the trader (read-only use). Resolved once per process."""
    global _db
    if _db is None:
        env_path = os.getenv("PAIRTRADER_DATABASE_PATH")
        path = Path(env_path) if env_path else resolve_database_path(_load_config_or_empty())
        _db = SQLiteDatabase(path)
    return _db


def _df_to_records(df: pd.DataFrame) -> list[dict[str, Any]]:
    if df is None or df.empty:
        return []
    return jsonable_encoder(df.to_dict(orient="records"))


app = FastAPI(
    title="PairTrader API",
    version="0.1.0",
)

# Local dev defaults.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return a clean JSON 500 instead of a stack trace."""
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
    Run a blocking read in the thread pool with a timeout.
    Returns None on timeout or failure so the dashboard degrades instead of hanging.
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


@app.get("/api/health")
async def health(db: SQLiteDatabase = Depends(get_db)) -> dict[str, Any]:
    db_ok = False
    db_error = None
    try:
        conn = db.connect_ro()
        try:
            conn.execute("SELECT 1").fetchone()
        finally:
            conn.close()
        db_ok = True
    except sqlite3.Error as e:
        db_error = str(e)

    return {
        "status": "ok" if db_ok else "degraded",
        "db_path": db.path,
        "db_ok": db_ok,
        "db_error": db_error,
    }


def _bot_overview(db: SQLiteDatabase) -> list[dict[str, Any]]:
    cfg = _load_config_or_empty()
    states = BotStateRepository(db).list_states()
    balances = BalanceSnapshotRepository(db).latest_per_bot()

    state_by_key: dict[str, dict[str, Any]] = {}
    if not states.empty:
        for row in states.itertuples(index=False):
            try:
                state_by_key[row.bot_key] = {"state": json.loads(row.state_json), "updated_at": row.updated_at}
            except (TypeError, ValueError):
                logger.warning(f"Unreadable state for {row.bot_key}")
    balance_by_key = {r["bot_key"]: r for r in _df_to_records(balances)}

    bots = cfg.get("bots") or []
    names = [str(b.get("name")) for b in bots if isinstance(b, dict) and b.get("name")]
    # Bots seen in the database but no longer configured are still reported.
    names += [k for k in balance_by_key if k not in names]

    out: list[dict[str, Any]] = []
    for name in names:
        bot_cfg = next((b for b in bots if isinstance(b, dict) and str(b.get("name")) == name), {})
        out.append(
            {
                "name": name,
                "pair": bot_cfg.get("pair") or (balance_by_key.get(name) or {}).get("pair"),
                "strategy": bot_cfg.get("strategy"),
                "platform": bot_cfg.get("platform"),
                "market_type": bot_cfg.get("market_type"),
                "strategy_state": state_by_key.get(name),
                "venue_state": state_by_key.get(f"sim:{name}"),
                "latest_balance": balance_by_key.get(name),
            }
        )
    return out


@app.get("/api/bots")
async def bots(db: SQLiteDatabase = Depends(get_db)) -> list[dict[str, Any]]:
    """Configured bots with their persisted state and latest balance snapshot."""
    result = await _run_in_executor(_bot_overview, db)
    return jsonable_encoder(result or [])


@app.get("/api/history/trades")
async def history_trades(
    limit: int = Query(default=500, ge=1, le=5000),
    bot: str | None = Query(default=None),
    db: SQLiteDatabase = Depends(get_db),
) -> list[dict[str, Any]]:
    df = await _run_in_executor(TradeRepository(db).recent, limit=limit, bot_key=bot)
    return _df_to_records(df)


@app.get("/api/history/decisions")
async def history_decisions(
    limit: int = Query(default=200, ge=1, le=2000),
    db: SQLiteDatabase = Depends(get_db),
) -> list[dict[str, Any]]:
    """AI decisions, newest first (audit log)."""
    df = await _run_in_executor(DecisionLogRepository(db).recent, limit=limit)
    return _df_to_records(df)


@app.get("/api/history/balances")
async def history_balances(
    limit: int = Query(default=1000, ge=1, le=10000),
    db: SQLiteDatabase = Depends(get_db),
) -> list[dict[str, Any]]:
    df = await _run_in_executor(BalanceSnapshotRepository(db).history, limit=limit)
    return _df_to_records(df)


@app.get("/api/prompts")
async def prompts() -> dict[str, Any]:
    """
    Built-in prompt templates used by the signal strategy.

    These are the strategy instructions only (no OUTPUT schema), because the output format
    is enforced by the code.
    """
    return jsonable_encoder(get_prompt_templates())
