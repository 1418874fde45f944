"""Technical indicators — SMA, standard deviation, Bollinger, RSI, ATR.

Pure functions, no I/O.  Insufficient data yields ``None`` ("unavailable")
instead of raising; callers skip signal evaluation for that cycle.
"""

import math
from typing import Optional, Sequence

from optiontrader.config import StrategyConfig
from optiontrader.strategy.models import Bollinger, Candle, IndicatorSnapshot


def _is_finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


# ── Moving average / dispersion ──────────────────────────────────────────


def sma(values: Sequence[float], period: int) -> Optional[float]:
    """Arithmetic mean of the last *period* values, or ``None``."""
    if period < 1 or len(values) < period:
        return None
    window = values[-period:]
    return sum(window) / period


def std_dev(values: Sequence[float], period: int) -> Optional[float]:
    """Population standard deviation of the last *period* values, or ``None``."""
    mean = sma(values, period)
    if mean is None:
        return None
    window = values[-period:]
    variance = sum((v - mean) ** 2 for v in window) / period
    return math.sqrt(variance)


def bollinger(
    values: Sequence[float], period: int = 20, width: float = 2.0,
) -> Optional[Bollinger]:
    """Bollinger bands ``mid ± width × σ`` over the last *period* values."""
    mid = sma(values, period)
    sigma = std_dev(values, period)
    if mid is None or sigma is None:
        return None
    return Bollinger(
        upper=mid + width * sigma,
        mid=mid,
        lower=mid - width * sigma,
    )


# ── RSI ──────────────────────────────────────────────────────────────────


def rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    """Relative Strength Index over the last *period* close-to-close deltas.

    Algorithm:
        gains  = Σ positive deltas,  losses = Σ |negative deltas|
        avg_gain = gains / period,   avg_loss = losses / period
        RSI = 100 − 100 / (1 + avg_gain / avg_loss)

    Uses simple (not Wilder-smoothed) averages.  When ``avg_loss`` is zero
    the result saturates at 100.  Requires ``period + 1`` closes.

    Returns:
        RSI in ``[0, 100]``, or ``None`` when there is not enough data.
    """
    if period < 1 or len(closes) < period + 1:
        return None

    window = closes[-(period + 1):]
    gains = 0.0
    losses = 0.0
    for prev, curr in zip(window, window[1:]):
        delta = curr - prev
        if delta > 0:
            gains += delta
        else:
            losses -= delta

    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


# ── ATR ──────────────────────────────────────────────────────────────────


def true_range(candle: Candle, prev_close: Optional[float]) -> float:
    """``max(high − low, |high − prev_close|, |low − prev_close|)``.

    A bar with a missing or non-finite input contributes 0.
    """
    high, low = candle.high, candle.low
    if not (_is_finite(high) and _is_finite(low) and _is_finite(prev_close)):
        return 0.0
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """Average True Range over the trailing *period* bars.

    Requires ``period + 1`` candles (the first bar needs a previous
    close).  Returns the simple mean of the last *period* true ranges,
    or ``None`` when there is not enough data.
    """
    if period < 1 or len(candles) < period + 1:
        return None

    start = len(candles) - period
    ranges = [
        true_range(candles[i], candles[i - 1].close)
        for i in range(start, len(candles))
    ]
    return sum(ranges) / period


# ── Snapshot ─────────────────────────────────────────────────────────────


def compute_indicators(
    candles: Sequence[Candle], config: StrategyConfig,
) -> IndicatorSnapshot:
    """Recompute every indicator for one instrument's finalized history."""
    closes = [c.close for c in candles if c.close is not None]
    period = config.bollinger.period
    return IndicatorSnapshot(
        sma=sma(closes, period),
        std_dev=std_dev(closes, period),
        bollinger=bollinger(closes, period, config.bollinger.width),
        rsi=rsi(closes, config.rsi.period),
        atr=atr(candles, config.atr.period),
    )
