"""Backtest engine — replays historical candles through a live TradingEngine.

Each candle becomes four pseudo-ticks (open, then the nearer extreme, the
far extreme, and the close) stamped inside the candle's bucket, so the
exact tick path, candle aggregation and risk logic used live are
exercised against a simulated clock.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from optiontrader.broker.models import Tick
from optiontrader.config import StrategyConfig
from optiontrader.events import SELL, TradeEvent
from optiontrader.engine import TradingEngine
from optiontrader.instruments import Instrument
from optiontrader.reporting.stats import calculate_stats
from optiontrader.repos.position_store import PositionStore
from optiontrader.strategy.models import Candle

logger = logging.getLogger("optiontrader")


class SimulatedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)


class _CollectingSink:
    def __init__(self) -> None:
        self.events: list[TradeEvent] = []
        self.alerts: list[str] = []

    def record_trade(self, event: TradeEvent) -> None:
        self.events.append(event)

    def alert(self, message: str) -> None:
        self.alerts.append(message)


async def _no_sleep(_seconds: float) -> None:
    return None


class BacktestEngine:
    """Runs one instrument's candle history through the strategy.

    Args:
        config: Strategy settings (candle interval must match the data).
    """

    def __init__(self, config: StrategyConfig) -> None:
        self._config = config

    def default_warmup(self) -> int:
        """Candles needed before every indicator is available."""
        cfg = self._config
        return max(cfg.bollinger.period, cfg.rsi.period + 1, cfg.atr.period + 1)

    async def run(
        self,
        instrument: Instrument,
        candles: list[Candle],
        warmup: Optional[int] = None,
    ) -> dict:
        """Replay *candles* (oldest first) and return trades and statistics.

        The first *warmup* candles seed the history; the rest are replayed
        as ticks.  Positions still open at the end are closed at the last
        close with reason ``"End of Data"``.

        Returns:
            ``{"trades": [...], "events": [...], "alerts": [...], "stats": {...}}``
        """
        if warmup is None:
            warmup = self.default_warmup()
        if len(candles) <= warmup:
            raise ValueError(
                f"Need more than {warmup} candles to backtest, got {len(candles)}"
            )

        clock = SimulatedClock(candles[warmup].start_time)
        sink = _CollectingSink()
        engine = TradingEngine(
            self._config,
            clock,
            PositionStore(None),
            sink=sink,
            instruments=[instrument],
            sleep=_no_sleep,
        )
        engine.aggregator.seed(instrument.token, candles[:warmup])
        await engine.initialize()

        step = timedelta(minutes=self._config.candle_interval_minutes) / 4
        for candle in candles[warmup:]:
            if not candle.has_price:
                continue
            for i, price in enumerate(_pseudo_ticks(candle)):
                moment = candle.start_time + step * i
                clock.set(moment)
                engine.on_tick(Tick(instrument.token, price, moment, candle.volume / 4))
            await engine.check_square_off()

        clock.set(candles[-1].start_time + step * 4)
        await engine.close_all_positions("End of Data", halt=False)

        trades = [e.to_dict() for e in sink.events if e.action == SELL]
        stats = calculate_stats(trades)
        logger.info(
            "Backtest %s: %d trades, net P&L %.2f",
            instrument.symbol, stats["total_trades"], stats["net_pnl"],
        )
        return {
            "trades": trades,
            "events": [e.to_dict() for e in sink.events],
            "alerts": sink.alerts,
            "stats": stats,
        }


def _pseudo_ticks(candle: Candle) -> list[float]:
    """open → nearer extreme → far extreme → close."""
    if candle.close >= candle.open:
        return [candle.open, candle.low, candle.high, candle.close]
    return [candle.open, candle.high, candle.low, candle.close]
