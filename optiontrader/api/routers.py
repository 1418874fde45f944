"""Internal API routers — operator commands and read-only views.

No business logic, no DB access.  Delegates to the engine and trade repo
injected at startup via ``configure_routers``.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Query

from optiontrader.reporting.stats import daily_report

logger = logging.getLogger("optiontrader")
router = APIRouter()

# ── Injected collaborators (set during app startup) ──────────────────────

_engine = None      # TradingEngine, set via configure_routers()
_trade_repo = None  # TradeRepo, set via configure_routers()


def configure_routers(engine=None, trade_repo=None) -> None:
    """Inject the engine and trade repo used by the endpoints."""
    global _engine, _trade_repo  # noqa: PLW0603
    _engine = engine
    _trade_repo = trade_repo


# ── Views ────────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Halt state, daily P&L and open positions with unrealised P&L."""
    if _engine is None:
        return {"error": "Engine not running"}
    return _engine.status()


@router.get("/positions")
async def get_positions():
    """Open positions with live unrealised P&L."""
    if _engine is None:
        return {"positions": []}
    return {"positions": _engine.status()["open_positions"]}


@router.get("/trades")
async def get_trades(
    limit: int = Query(default=50, ge=1, le=500),
    day: Optional[date] = Query(default=None),
    action: Optional[str] = Query(default=None, pattern="^(BUY|SELL)$"),
):
    """Return recent trade log entries."""
    if _trade_repo is None:
        return {"trades": [], "total": 0}
    return _trade_repo.get_trades(limit=limit, day=day, action=action)


@router.get("/report")
async def get_report(day: Optional[date] = Query(default=None)):
    """Daily statistics over closed trades (default: engine's trading day)."""
    if _trade_repo is None:
        return {"error": "No trade log"}
    if day is None:
        day = (
            date.fromisoformat(_engine.status()["trading_date"])
            if _engine is not None else date.today()
        )
    return daily_report(_trade_repo, day)


# ── Control ──────────────────────────────────────────────────────────────


@router.post("/control/halt")
async def halt_trading():
    """Stop new entries; exits keep running."""
    if _engine is None:
        return {"error": "Engine not running"}
    _engine.halt_trading()
    logger.warning("Trading halted via API.")
    return {"status": "halted"}


@router.post("/control/resume")
async def resume_trading():
    """Resume entries unless a daily P&L limit is breached."""
    if _engine is None:
        return {"error": "Engine not running"}
    if _engine.resume_trading():
        logger.info("Trading resumed via API.")
        return {"status": "resumed"}
    return {"status": "refused", "reason": "daily P&L limit breached"}


@router.post("/control/close-all")
async def close_all():
    """Halt trading and close every open position."""
    if _engine is None:
        return {"error": "Engine not running"}
    events = await _engine.close_all_positions("Manual Close All")
    logger.warning("Close-all via API: %d position(s) closed.", len(events))
    return {"status": "closed", "trades": [e.to_dict() for e in events]}
