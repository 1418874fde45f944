"""Entry/exit rule evaluation for live option instruments.

Entry rules run in a fixed priority order; the first one to fire wins:

1. Bollinger breakout + RSI confirmation
   CE: price > upper band and RSI > bull threshold
   PE: price < lower band and RSI < bear threshold
2. Support/resistance breakout
   CE: price above the nearest resistance, with the last N closes above it
   PE: price below the nearest support, with the last N closes below it

Exits are directional SL/TP threshold crosses.
"""

import logging
from datetime import datetime
from typing import Optional

from optiontrader.config import StrategyConfig
from optiontrader.risk.sl_tp import calculate_risk_levels, exit_reason
from optiontrader.risk.trailing_stop import AtrTrailingStop
from optiontrader.strategy.models import (
    CE,
    OPTION_TYPES,
    PE,
    EntrySignal,
    ExitSignal,
    InstrumentSeries,
    Level,
    Position,
)

logger = logging.getLogger("optiontrader")


class SignalEngine:
    """Stateless rule evaluator bound to one strategy configuration."""

    def __init__(self, config: StrategyConfig) -> None:
        self._config = config
        self._trailing: Optional[AtrTrailingStop] = None
        if config.trailing_stop.enabled:
            self._trailing = AtrTrailingStop(
                config.trailing_stop.activation_atr_multiple,
                config.trailing_stop.trail_atr_multiple,
            )

    # ── Entry ────────────────────────────────────────────────────────────

    def check_entry(self, series: InstrumentSeries, price: float) -> Optional[EntrySignal]:
        """Return the first firing entry rule for *series* at *price*."""
        if series.option_type not in OPTION_TYPES:
            return None
        return self._bb_rsi_entry(series, price) or self._sr_breakout_entry(series, price)

    def _bb_rsi_entry(self, series: InstrumentSeries, price: float) -> Optional[EntrySignal]:
        bands = series.indicators.bollinger
        rsi = series.indicators.rsi
        if bands is None or rsi is None:
            return None

        cfg = self._config.rsi
        if series.option_type == CE and price > bands.upper and rsi > cfg.bull_threshold:
            return EntrySignal(CE, price, "BB_RSI_Breakout_CE")
        if series.option_type == PE and price < bands.lower and rsi < cfg.bear_threshold:
            return EntrySignal(PE, price, "BB_RSI_Breakout_PE")
        return None

    def _sr_breakout_entry(self, series: InstrumentSeries, price: float) -> Optional[EntrySignal]:
        cfg = self._config.level_detection
        if not cfg.enabled:
            return None

        n = max(cfg.breakout_confirmation_candles, 0)
        closes = series.closes
        if len(closes) < n:
            return None
        recent = closes[-n:] if n else []

        if series.option_type == CE:
            level = nearest_level(
                [lv for lv in series.levels.resistances if lv.price < price], price,
            )
            if level is not None and all(c > level.price for c in recent):
                return EntrySignal(CE, price, f"Resistance Breakout @{level.price:.2f}", level)
        else:
            level = nearest_level(
                [lv for lv in series.levels.supports if lv.price > price], price,
            )
            if level is not None and all(c < level.price for c in recent):
                return EntrySignal(PE, price, f"Support Breakdown @{level.price:.2f}", level)
        return None

    def build_position(
        self,
        series: InstrumentSeries,
        signal: EntrySignal,
        now: datetime,
    ) -> Optional[Position]:
        """Size the entry and attach SL/TP.

        Returns ``None`` (silently) for a non-positive or malformed
        quantity, or when ATR is unavailable.
        """
        quantity = self._quantity(series)
        if quantity is None:
            logger.debug("Entry on %s skipped: no usable quantity", series.symbol)
            return None

        atr = series.indicators.atr
        if atr is None:
            return None

        levels = series.levels if self._config.level_detection.enabled else None
        risk = calculate_risk_levels(
            signal.price,
            signal.option_type,
            atr,
            self._config.atr.sl_multiplier,
            self._config.atr.tp_multiplier,
            levels,
        )
        if risk is None:
            return None

        return Position(
            instrument_token=series.token,
            symbol=series.symbol,
            option_type=signal.option_type,
            quantity=quantity,
            entry_price=signal.price,
            entry_time=now,
            stop_loss=risk.sl,
            take_profit=risk.tp,
            exchange_segment=series.exchange_segment,
            expiry=series.expiry,
            entry_reason=signal.reason,
            atr_at_entry=atr,
            best_price=signal.price,
        )

    def _quantity(self, series: InstrumentSeries) -> Optional[int]:
        raw = series.lot_size or self._config.risk.default_quantity
        try:
            quantity = int(raw)
        except (TypeError, ValueError):
            return None
        return quantity if quantity > 0 else None

    # ── Exit ─────────────────────────────────────────────────────────────

    def check_exit(self, position: Position, price: float) -> Optional[ExitSignal]:
        """Return an exit decision if *price* crosses the position's SL or TP.

        With the trailing stop enabled the stop is tightened first.
        """
        if self._trailing is not None:
            moved = self._trailing.update(position, price)
            if moved is not None:
                logger.info(
                    "Trailing SL for %s moved to %.2f", position.symbol, moved,
                )
        reason = exit_reason(
            position.option_type,
            price,
            position.stop_loss,
            position.take_profit,
            trailing=position.trailing_active,
        )
        if reason is None:
            return None
        return ExitSignal(price=price, reason=reason)


def nearest_level(levels: list[Level], price: float) -> Optional[Level]:
    """Level closest to *price*; equal distances keep price-sorted order."""
    best: Optional[Level] = None
    for level in levels:
        if best is None or abs(level.price - price) < abs(best.price - price):
            best = level
    return best
