"""Position store — authoritative map of open positions, backed by SQLite.

At most one open position per instrument.  The ``open_positions`` table is
rewritten in a single transaction on every add/remove, before the in-memory
map changes, so a restart recovers exactly the in-memory set.
"""

import logging
import sqlite3
from dataclasses import astuple, fields
from datetime import datetime
from typing import Iterator, Optional

from optiontrader.instruments import InstrumentCatalog
from optiontrader.repos.db import get_connection, init_db
from optiontrader.strategy.models import OPTION_TYPES, Position, option_type_from_symbol

logger = logging.getLogger("optiontrader")

_COLUMNS = [f.name for f in fields(Position)]


class PositionStoreError(Exception):
    """The persisted position set cannot be read; trading must not start."""


class PositionStore:
    """Open positions keyed by instrument token.

    Args:
        db_path: Path to the SQLite database file, or ``None`` for an
            in-memory store that never persists (backtests).
    """

    def __init__(self, db_path: Optional[str]) -> None:
        self._db_path = db_path
        self._positions: dict[str, Position] = {}
        self._initialized = False

    # ── Load ─────────────────────────────────────────────────────────────

    def load(self, catalog: Optional[InstrumentCatalog] = None) -> int:
        """Replace the in-memory set with the persisted one.

        Missing symbol, option type or exchange segment are filled from
        *catalog* by token.  An empty or absent store loads nothing.

        Returns:
            Number of positions loaded.

        Raises:
            PositionStoreError: The store is corrupt or a row is unusable.
        """
        if self._db_path is None:
            return len(self._positions)
        try:
            init_db(self._db_path)
            self._initialized = True
            conn = get_connection(self._db_path)
            try:
                rows = conn.execute(
                    f"SELECT {', '.join(_COLUMNS)} FROM open_positions"
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.DatabaseError as exc:
            raise PositionStoreError(
                f"Position store {self._db_path} is unreadable: {exc}"
            ) from exc

        positions: dict[str, Position] = {}
        for row in rows:
            position = self._from_row(dict(row), catalog)
            positions[position.instrument_token] = position

        self._positions = positions
        logger.info("Loaded %d open position(s) from %s", len(positions), self._db_path)
        return len(positions)

    @staticmethod
    def _from_row(row: dict, catalog: Optional[InstrumentCatalog]) -> Position:
        token = str(row["instrument_token"])
        instrument = catalog.get(token) if catalog is not None else None

        symbol = row["symbol"] or (instrument.symbol if instrument else None)
        option_type = row["option_type"] or (instrument.option_type if instrument else None)
        option_type = option_type or option_type_from_symbol(symbol)
        exchange = row["exchange_segment"] or (
            instrument.exchange_segment if instrument else "NFO"
        )
        expiry = row["expiry"] or (instrument.expiry if instrument else None)

        if not symbol or option_type not in OPTION_TYPES:
            raise PositionStoreError(
                f"Stored position {token} has no resolvable symbol/option type"
            )

        try:
            return Position(
                instrument_token=token,
                symbol=symbol,
                option_type=option_type,
                quantity=int(row["quantity"]),
                entry_price=float(row["entry_price"]),
                entry_time=datetime.fromisoformat(row["entry_time"]),
                stop_loss=float(row["stop_loss"]),
                take_profit=float(row["take_profit"]),
                exchange_segment=exchange,
                expiry=expiry,
                entry_reason=row["entry_reason"] or "",
                atr_at_entry=_opt_float(row["atr_at_entry"]),
                best_price=_opt_float(row["best_price"]),
                trailing_active=bool(row["trailing_active"]),
            )
        except (TypeError, ValueError) as exc:
            raise PositionStoreError(f"Stored position {token} is malformed: {exc}") from exc

    # ── Mutation ─────────────────────────────────────────────────────────

    def add(self, position: Position) -> bool:
        """Insert *position*; a second position for the same instrument is rejected.

        The store is written before the in-memory map changes, so a failed
        write leaves both unchanged.
        """
        token = position.instrument_token
        if token in self._positions:
            logger.warning(
                "Rejected second open position for %s (%s)", position.symbol, token,
            )
            return False
        updated = {**self._positions, token: position}
        self._persist(updated)
        self._positions = updated
        return True

    def remove(self, token: str) -> Optional[Position]:
        """Remove and return the position for *token*, or ``None``."""
        position = self._positions.get(token)
        if position is None:
            return None
        updated = {k: p for k, p in self._positions.items() if k != token}
        self._persist(updated)
        self._positions = updated
        return position

    def save(self) -> None:
        """Persist in-place changes (e.g. a trailed stop)."""
        self._persist(self._positions)

    def _persist(self, positions: dict[str, Position]) -> None:
        if self._db_path is None:
            return
        placeholders = ", ".join("?" for _ in _COLUMNS)
        rows = [self._to_row(p) for p in positions.values()]
        if not self._initialized:
            init_db(self._db_path)
            self._initialized = True
        conn = get_connection(self._db_path)
        try:
            with conn:
                conn.execute("DELETE FROM open_positions")
                conn.executemany(
                    f"INSERT INTO open_positions ({', '.join(_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    rows,
                )
        finally:
            conn.close()

    @staticmethod
    def _to_row(position: Position) -> tuple:
        values = list(astuple(position))
        idx = _COLUMNS.index("entry_time")
        values[idx] = position.entry_time.isoformat()
        idx = _COLUMNS.index("trailing_active")
        values[idx] = int(position.trailing_active)
        return tuple(values)

    # ── Queries ──────────────────────────────────────────────────────────

    def get(self, token: str) -> Optional[Position]:
        return self._positions.get(token)

    def all(self) -> list[Position]:
        return list(self._positions.values())

    def __contains__(self, token: str) -> bool:
        return token in self._positions

    def __iter__(self) -> Iterator[Position]:
        return iter(list(self._positions.values()))

    def __len__(self) -> int:
        return len(self._positions)


def _opt_float(value) -> Optional[float]:
    return float(value) if value is not None else None
