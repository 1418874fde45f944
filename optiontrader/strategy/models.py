"""Strategy data models — candles, levels, indicator snapshots, positions."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


# ── Option types ─────────────────────────────────────────────────────────

CE = "CE"
PE = "PE"
OPTION_TYPES = (CE, PE)

SUPPORT = "support"
RESISTANCE = "resistance"


def option_type_from_symbol(symbol: Optional[str]) -> Optional[str]:
    """Return ``"CE"`` or ``"PE"`` from a trading-symbol suffix, else ``None``."""
    if not symbol:
        return None
    upper = symbol.strip().upper()
    for option_type in OPTION_TYPES:
        if upper.endswith(option_type):
            return option_type
    return None


# ── Candles ──────────────────────────────────────────────────────────────


@dataclass
class Candle:
    """A single candlestick bar.

    Mutable while it is an instrument's current bucket; never modified
    after it has been appended to the instrument's history.
    """

    start_time: datetime
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: float = 0.0

    @property
    def has_price(self) -> bool:
        """``True`` once the bucket has received at least one price."""
        return self.open is not None

    def update(self, price: float, volume: float = 0.0) -> None:
        """Fold a traded price into the bar."""
        if self.open is None:
            self.open = self.high = self.low = self.close = price
        else:
            self.high = max(self.high, price)
            self.low = min(self.low, price)
            self.close = price
        self.volume += volume


# ── Derived values ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class Bollinger:
    """Bollinger band triple."""

    upper: float
    mid: float
    lower: float


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Indicator values for one instrument.  ``None`` means unavailable."""

    sma: Optional[float] = None
    std_dev: Optional[float] = None
    bollinger: Optional[Bollinger] = None
    rsi: Optional[float] = None
    atr: Optional[float] = None


@dataclass(frozen=True)
class Level:
    """A grouped support or resistance price zone."""

    price: float
    kind: str  # "support" or "resistance"
    strength: int  # number of merged pivots
    last_touch: datetime


@dataclass(frozen=True)
class LevelSet:
    """Supports and resistances, each in ascending price order."""

    supports: tuple[Level, ...] = ()
    resistances: tuple[Level, ...] = ()


# ── Per-instrument state ─────────────────────────────────────────────────


@dataclass
class InstrumentSeries:
    """Live state for one tradable instrument.

    Candles are mutated only by the ``CandleAggregator``; ``indicators``
    and ``levels`` are replaced wholesale on every candle boundary.
    """

    token: str
    symbol: str
    option_type: Optional[str] = None
    exchange_segment: str = "NFO"
    lot_size: Optional[int] = None
    expiry: Optional[str] = None
    candles: list[Candle] = field(default_factory=list)
    current_candle: Optional[Candle] = None
    last_price: Optional[float] = None
    indicators: IndicatorSnapshot = field(default_factory=IndicatorSnapshot)
    levels: LevelSet = field(default_factory=LevelSet)

    @property
    def closes(self) -> list[float]:
        """Closes of the finalized history, oldest first."""
        return [c.close for c in self.candles if c.close is not None]


# ── Positions and signals ────────────────────────────────────────────────


@dataclass
class Position:
    """An open position on one instrument.

    ``stop_loss`` may tighten while the position is open (trailing stop);
    every other field is fixed at entry.
    """

    instrument_token: str
    symbol: str
    option_type: str
    quantity: int
    entry_price: float
    entry_time: datetime
    stop_loss: float
    take_profit: float
    exchange_segment: str = "NFO"
    expiry: Optional[str] = None
    entry_reason: str = ""
    atr_at_entry: Optional[float] = None
    best_price: Optional[float] = None
    trailing_active: bool = False

    @property
    def direction(self) -> int:
        """``+1`` for CE, ``-1`` for PE."""
        return -1 if self.option_type == PE else 1

    def pnl_at(self, price: float) -> float:
        """P&L of closing the whole position at *price*."""
        return (price - self.entry_price) * self.quantity * self.direction


@dataclass(frozen=True)
class EntrySignal:
    """An entry decision produced by the signal rules."""

    option_type: str
    price: float
    reason: str
    level: Optional[Level] = None


@dataclass(frozen=True)
class ExitSignal:
    """An exit decision for an open position."""

    price: float
    reason: str
