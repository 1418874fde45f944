"""Trade log repository — SQLite append/query for the trade_log table."""

from datetime import date
from typing import Optional

from optiontrader.events import SELL, TradeEvent
from optiontrader.repos.db import get_connection, init_db


class TradeRepo:
    """Data access layer for trade records; also usable as an event sink.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        init_db(db_path)

    # ── Write ────────────────────────────────────────────────────────────

    def insert_trade(self, event: TradeEvent) -> int:
        """Append one trade record and return its ``id``."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO trade_log
                    (timestamp, trade_date, token, symbol, action, price,
                     quantity, stop_loss, take_profit, pnl, reason, daily_pnl)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.timestamp.isoformat(),
                    event.timestamp.date().isoformat(),
                    event.token, event.symbol, event.action, event.price,
                    event.quantity, event.stop_loss, event.take_profit,
                    event.pnl, event.reason, event.daily_pnl,
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def record_trade(self, event: TradeEvent) -> None:
        self.insert_trade(event)

    def alert(self, message: str) -> None:
        """Alerts are not persisted."""

    # ── Read ─────────────────────────────────────────────────────────────

    def get_trades(
        self,
        limit: int = 50,
        day: Optional[date] = None,
        action: Optional[str] = None,
    ) -> dict:
        """Return recent trade records, newest first.

        Returns:
            ``{"trades": [...], "total": int}``
        """
        conn = get_connection(self._db_path)
        try:
            conditions: list[str] = []
            params: list = []

            if day is not None:
                conditions.append("trade_date = ?")
                params.append(day.isoformat())
            if action:
                conditions.append("action = ?")
                params.append(action)

            where_clause = ""
            if conditions:
                where_clause = "WHERE " + " AND ".join(conditions)

            rows = conn.execute(
                f"SELECT * FROM trade_log {where_clause} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM trade_log {where_clause}",
                params,
            ).fetchone()[0]

            trades = [dict(row) for row in rows]
            return {"trades": trades, "total": total}
        finally:
            conn.close()

    def get_closed_trades(self, day: date) -> list[dict]:
        """All SELL records of *day*, oldest first."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM trade_log WHERE trade_date = ? AND action = ? ORDER BY id",
                (day.isoformat(), SELL),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()
