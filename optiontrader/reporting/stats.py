"""Trade statistics — pure functions over closed-trade records."""

from datetime import date
from typing import Optional

from optiontrader.repos.trade_repo import TradeRepo


def calculate_stats(trades: list[dict]) -> dict:
    """Compute summary statistics from a list of closed trades.

    Each trade dict must have a ``"pnl"`` key (float); ``None`` P&L is
    ignored.

    Returns:
        ``total_trades``, ``winning_trades``, ``losing_trades``,
        ``win_rate``, ``gross_profit``, ``gross_loss``, ``profit_factor``,
        ``max_drawdown``, ``net_pnl``.
    """
    pnls = [t["pnl"] for t in trades if t.get("pnl") is not None]
    if not pnls:
        return {
            "total_trades": 0,
            "winning_trades": 0,
            "losing_trades": 0,
            "win_rate": 0.0,
            "gross_profit": 0.0,
            "gross_loss": 0.0,
            "profit_factor": None,
            "max_drawdown": 0.0,
            "net_pnl": 0.0,
        }

    total = len(pnls)
    winners = [p for p in pnls if p > 0]
    losers = [p for p in pnls if p <= 0]

    gross_profit = sum(winners)
    gross_loss = abs(sum(losers))
    profit_factor: Optional[float] = (
        gross_profit / gross_loss if gross_loss > 0 else None
    )

    return {
        "total_trades": total,
        "winning_trades": len(winners),
        "losing_trades": len(losers),
        "win_rate": round(len(winners) / total, 4),
        "gross_profit": round(gross_profit, 2),
        "gross_loss": round(gross_loss, 2),
        "profit_factor": round(profit_factor, 4) if profit_factor is not None else None,
        "max_drawdown": round(_max_drawdown(pnls), 2),
        "net_pnl": round(sum(pnls), 2),
    }


def daily_report(trade_repo: TradeRepo, day: date) -> dict:
    """Statistics over the SELL records of one trading day."""
    trades = trade_repo.get_closed_trades(day)
    report = calculate_stats(trades)
    report["date"] = day.isoformat()
    return report


# ── Helpers ──────────────────────────────────────────────────────────────


def _max_drawdown(pnls: list[float]) -> float:
    """Maximum drawdown from the cumulative P&L curve.

    Returns the largest peak-to-trough decline as a positive number.
    """
    cumulative = 0.0
    peak = 0.0
    max_dd = 0.0
    for p in pnls:
        cumulative += p
        if cumulative > peak:
            peak = cumulative
        dd = peak - cumulative
        if dd > max_dd:
            max_dd = dd
    return max_dd
