"""optiontrader — Trading engine (tick orchestration).

Wires candle aggregation, indicators, levels, signal rules, positions and
risk into one single-threaded engine.  Per tick: update the candle, check
the exit of an open position first, then (if risk allows) check entries.
On every candle boundary: finalize buckets, then recompute indicators and
levels for every instrument before the next tick is processed.
"""

import asyncio
import logging
import math
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional, Protocol
from zoneinfo import ZoneInfo

from optiontrader.broker.history import HistoricalRefresher
from optiontrader.broker.models import HistoryRequest, Tick
from optiontrader.config import StrategyConfig
from optiontrader.events import BUY, SELL, EventSink, LoggingSink, TradeEvent
from optiontrader.instruments import Instrument, InstrumentCatalog
from optiontrader.repos.position_store import PositionStore
from optiontrader.risk.risk_manager import HALT_LIMIT, RiskManager
from optiontrader.scheduler import CandleScheduler, Clock, floor_boundary
from optiontrader.strategy.candles import CandleAggregator
from optiontrader.strategy.indicators import compute_indicators
from optiontrader.strategy.levels import detect_levels
from optiontrader.strategy.models import EntrySignal, InstrumentSeries, Position
from optiontrader.strategy.session_filter import is_at_or_after, is_in_session
from optiontrader.strategy.signals import SignalEngine

logger = logging.getLogger("optiontrader")


class QuoteSource(Protocol):
    """Polling market-data feed (broker client or mock)."""

    async def fetch_ltp(self, exchange_tokens: dict[str, list[str]]) -> list[Tick]: ...


class TradingEngine:
    """Owns all live trading state for one strategy run.

    Args:
        config: Strategy settings.
        clock: Time source (market-local, timezone-aware).
        positions: Position store (loaded by :meth:`initialize`).
        sink: Receiver of trade records and alerts.
        instruments: Instruments to trade.
        feed: Polling quote source used by :meth:`run`.
        history: Historical refresher used by :meth:`initialize`.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        config: StrategyConfig,
        clock: Clock,
        positions: PositionStore,
        sink: Optional[EventSink] = None,
        instruments: Iterable[Instrument] = (),
        feed: Optional[QuoteSource] = None,
        history: Optional[HistoricalRefresher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._clock = clock
        self._tz = ZoneInfo(config.market_hours.timezone)
        self._positions = positions
        self._sink: EventSink = sink if sink is not None else LoggingSink()
        self._feed = feed
        self._history = history
        self._sleep = sleep

        now = self._now()
        self._aggregator = CandleAggregator(
            config.candle_interval_minutes,
            config.max_candles_to_keep,
            floor_boundary(now, config.candle_interval_minutes),
        )
        self._risk = RiskManager(
            clock,
            max_daily_loss=config.risk.max_daily_loss,
            cooldown_minutes=config.risk.cooldown_minutes,
            max_daily_profit=config.risk.max_daily_profit,
        )
        self._signals = SignalEngine(config)
        self._scheduler: Optional[CandleScheduler] = None
        self._trading_date: date = now.date()
        self._squared_off_on: Optional[date] = None
        self._running: bool = False
        self._cycle_count: int = 0

        for instrument in instruments:
            self.add_instrument(instrument)

    # ── Accessors ────────────────────────────────────────────────────────

    @property
    def risk(self) -> RiskManager:
        return self._risk

    @property
    def positions(self) -> PositionStore:
        return self._positions

    @property
    def aggregator(self) -> CandleAggregator:
        return self._aggregator

    @property
    def running(self) -> bool:
        return self._running

    def _now(self) -> datetime:
        return self._clock.now().astimezone(self._tz)

    def add_instrument(self, instrument: Instrument) -> InstrumentSeries:
        """Start tracking *instrument*; returns its live series."""
        existing = self._aggregator.series(instrument.token)
        if existing is not None:
            return existing
        return self._aggregator.register(instrument.to_series())

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self, catalog: Optional[InstrumentCatalog] = None) -> None:
        """Load persisted positions and seed every series with history.

        Raises:
            PositionStoreError: The position store is corrupt.
        """
        self._positions.load(catalog)
        for position in self._positions:
            if position.instrument_token not in self._aggregator:
                self.add_instrument(
                    Instrument(
                        token=position.instrument_token,
                        symbol=position.symbol,
                        exchange_segment=position.exchange_segment,
                        option_type=position.option_type,
                        expiry=position.expiry,
                    )
                )

        if self._history is not None:
            await self.refresh_history()
        else:
            self._recompute_all()
        logger.info(
            "Engine initialised: %d instrument(s), %d open position(s).",
            len(self._aggregator), len(self._positions),
        )

    async def refresh_history(self) -> int:
        """Seed series from the historical source; failures leave series unchanged.

        Returns:
            Number of instruments seeded.
        """
        if self._history is None:
            return 0
        now = self._now()
        start = now - timedelta(days=self._config.history_days)
        requests = [
            HistoryRequest(
                token=s.token,
                exchange=s.exchange_segment,
                interval_minutes=self._config.candle_interval_minutes,
                from_time=start,
                to_time=now,
            )
            for s in self._aggregator
        ]
        fetched = await self._history.refresh(requests)
        for token, candles in fetched.items():
            kept = self._aggregator.seed(token, candles)
            logger.info("Seeded %s with %d candle(s).", token, kept)
        self._recompute_all()
        return len(fetched)

    def start_scheduler(self) -> CandleScheduler:
        """Start firing :meth:`on_candle_boundary` on the running loop."""
        if self._scheduler is None:
            self._scheduler = CandleScheduler(
                self._clock,
                self._config.candle_interval_minutes,
                self.on_candle_boundary,
                sleep=self._sleep,
            )
            self._scheduler.start()
        return self._scheduler

    def stop(self) -> None:
        """Signal the polling loop to stop after the current cycle."""
        self._running = False

    async def shutdown(self) -> list[TradeEvent]:
        """Cancel the scheduler, then close every open position."""
        self._running = False
        if self._scheduler is not None:
            self._scheduler.cancel()
            self._scheduler = None
        events = await self.close_all_positions("Shutdown")
        logger.info("Engine shut down; %d position(s) closed.", len(events))
        return events

    # ── Tick path ────────────────────────────────────────────────────────

    def on_tick(self, tick: Tick) -> list[TradeEvent]:
        """Process one feed event; returns the trade records it produced.

        Runs to completion without suspending, so no other tick or
        boundary can interleave with it.
        """
        series = self._aggregator.series(tick.token)
        if series is None:
            logger.debug("Tick for untracked instrument %s ignored", tick.token)
            return []
        price = tick.price
        if price is None or not math.isfinite(price) or price <= 0:
            self._alert(f"Ignored invalid price {price!r} for {series.symbol}")
            return []

        ts = tick.timestamp.astimezone(self._tz)
        if ts >= self._aggregator.bucket_end:
            self.on_candle_boundary(
                floor_boundary(ts, self._config.candle_interval_minutes)
            )
        self._aggregator.update(tick.token, price, tick.volume)

        position = self._positions.get(tick.token)
        if position is not None:
            event = self._check_exit(position, price, ts)
            return [event] if event is not None else []

        if not self._entries_allowed(series, ts):
            return []
        signal = self._signals.check_entry(series, price)
        if signal is None:
            return []
        event = self._execute_entry(series, signal, ts)
        return [event] if event is not None else []

    def _check_exit(self, position: Position, price: float, ts: datetime) -> Optional[TradeEvent]:
        stop_before = position.stop_loss
        exit_signal = self._signals.check_exit(position, price)
        if exit_signal is None:
            if position.stop_loss != stop_before:
                self._positions.save()
            return None
        return self._execute_exit(position, exit_signal.price, exit_signal.reason, ts)

    def _entries_allowed(self, series: InstrumentSeries, ts: datetime) -> bool:
        if self._risk.is_trading_halted():
            return False
        if self._risk.is_on_cooldown(series.token):
            return False
        hours = self._config.market_hours
        if not is_in_session(ts, hours.open, hours.close):
            return False
        return not is_at_or_after(ts, hours.square_off)

    # ── Execution ────────────────────────────────────────────────────────

    def _execute_entry(
        self, series: InstrumentSeries, signal: EntrySignal, ts: datetime,
    ) -> Optional[TradeEvent]:
        position = self._signals.build_position(series, signal, ts)
        if position is None:
            return None
        if not self._positions.add(position):
            self._alert(f"Rejected duplicate position for {series.symbol}")
            return None

        event = TradeEvent(
            timestamp=ts,
            token=position.instrument_token,
            symbol=position.symbol,
            action=BUY,
            price=position.entry_price,
            quantity=position.quantity,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            pnl=None,
            reason=signal.reason,
            daily_pnl=self._risk.daily_pnl,
        )
        self._sink.record_trade(event)
        return event

    def _execute_exit(
        self, position: Position, price: float, reason: str, ts: datetime,
    ) -> Optional[TradeEvent]:
        removed = self._positions.remove(position.instrument_token)
        if removed is None:
            logger.warning("Exit for %s skipped: no open position", position.symbol)
            return None

        halted_before = self._risk.halt_reason == HALT_LIMIT
        pnl = removed.pnl_at(price)
        daily_pnl = self._risk.update_pnl(pnl)
        if pnl < 0:
            self._risk.start_cooldown(removed.instrument_token)

        event = TradeEvent(
            timestamp=ts,
            token=removed.instrument_token,
            symbol=removed.symbol,
            action=SELL,
            price=price,
            quantity=removed.quantity,
            stop_loss=removed.stop_loss,
            take_profit=removed.take_profit,
            pnl=pnl,
            reason=reason,
            daily_pnl=daily_pnl,
        )
        self._sink.record_trade(event)
        if not halted_before and self._risk.halt_reason == HALT_LIMIT:
            self._alert(f"Daily P&L limit reached ({daily_pnl:.2f}); new entries halted")
        return event

    async def close_all_positions(
        self, reason: str = "Close All", halt: bool = True,
    ) -> list[TradeEvent]:
        """Exit every open position at its last known price.

        With *halt* the global halt flag is set first so no entry can race
        the unwind.  Exits run sequentially with a delay between each.
        """
        if halt:
            self._risk.halt_trading()
        open_positions = self._positions.all()
        events: list[TradeEvent] = []
        for i, position in enumerate(open_positions):
            if i:
                await self._sleep(self._config.close_all_delay_seconds)
            price = self._aggregator.last_price(position.instrument_token)
            if price is None:
                price = position.entry_price
            event = self._execute_exit(position, price, reason, self._now())
            if event is not None:
                events.append(event)
        return events

    async def check_square_off(self) -> list[TradeEvent]:
        """Close everything once per day at the configured square-off time."""
        now = self._now()
        if self._squared_off_on == now.date():
            return []
        if not is_at_or_after(now, self._config.market_hours.square_off):
            return []
        self._squared_off_on = now.date()
        if not len(self._positions):
            return []
        logger.info("EOD square-off: closing %d position(s).", len(self._positions))
        return await self.close_all_positions("EOD Square Off", halt=False)

    # ── Candle boundary ──────────────────────────────────────────────────

    def on_candle_boundary(self, boundary: datetime) -> None:
        """Finalize the elapsed bucket and recompute derived values.

        Buckets that started outside market hours are dropped, so nights
        and weekends leave no flat candles in the history.
        """
        boundary = boundary.astimezone(self._tz)
        if boundary.date() != self._trading_date:
            logger.info("New trading day %s: daily risk state reset.", boundary.date())
            self._risk.reset_day()
            self._trading_date = boundary.date()
        hours = self._config.market_hours
        keep = is_in_session(self._aggregator.bucket_start, hours.open, hours.close)
        if self._aggregator.finalize(boundary, keep=keep):
            self._recompute_all()

    def _recompute_all(self) -> None:
        for series in self._aggregator:
            series.indicators = compute_indicators(series.candles, self._config)
            series.levels = detect_levels(series.candles, self._config.level_detection)

    # ── Operator commands ────────────────────────────────────────────────

    def halt_trading(self) -> None:
        self._risk.halt_trading()
        self._alert("Trading halted by operator")

    def resume_trading(self) -> bool:
        resumed = self._risk.resume_trading()
        if resumed:
            self._alert("Trading resumed by operator")
        else:
            self._alert("Resume refused: daily P&L limit still breached")
        return resumed

    def status(self) -> dict:
        """Halt state, daily P&L and open positions with unrealised P&L."""
        open_positions = []
        for position in self._positions:
            ltp = self._aggregator.last_price(position.instrument_token)
            mark = ltp if ltp is not None else position.entry_price
            open_positions.append({
                "token": position.instrument_token,
                "symbol": position.symbol,
                "option_type": position.option_type,
                "quantity": position.quantity,
                "entry_price": position.entry_price,
                "entry_time": position.entry_time.isoformat(),
                "ltp": ltp,
                "stop_loss": position.stop_loss,
                "take_profit": position.take_profit,
                "unrealized_pnl": round(position.pnl_at(mark), 2),
                "entry_reason": position.entry_reason,
            })
        return {
            "running": self._running,
            "halted": self._risk.is_trading_halted(),
            "halt_reason": self._risk.halt_reason,
            "daily_pnl": round(self._risk.daily_pnl, 2),
            "trading_date": self._trading_date.isoformat(),
            "instruments": len(self._aggregator),
            "bucket_start": self._aggregator.bucket_start.isoformat(),
            "cycle_count": self._cycle_count,
            "open_positions": open_positions,
        }

    def _alert(self, message: str) -> None:
        logger.warning(message)
        self._sink.alert(message)

    # ── Polling loop ─────────────────────────────────────────────────────

    def _exchange_tokens(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for series in self._aggregator:
            grouped.setdefault(series.exchange_segment, []).append(series.token)
        return grouped

    async def run_once(self) -> dict:
        """Poll the feed once and process every tick.

        A feed failure is logged and treated as "no ticks this cycle".

        Returns:
            ``{"action": "polled", "ticks": n, "trades": [...]}`` or
            ``{"action": "feed_error", "reason": "..."}``.
        """
        if self._feed is None:
            raise RuntimeError("No quote feed configured")
        try:
            ticks = await self._feed.fetch_ltp(self._exchange_tokens())
        except Exception as exc:
            logger.error("Quote feed error: %s", exc)
            self._sink.alert(f"Quote feed error: {exc}")
            return {"action": "feed_error", "reason": str(exc)}

        trades: list[TradeEvent] = []
        for tick in ticks:
            trades.extend(self.on_tick(tick))
        trades.extend(await self.check_square_off())
        return {
            "action": "polled",
            "ticks": len(ticks),
            "trades": [t.to_dict() for t in trades],
        }

    async def run(
        self,
        poll_interval: float = 1.0,
        max_cycles: int = 0,
    ) -> list[dict]:
        """Run the polling loop until stopped, then shut down.

        Args:
            poll_interval: Seconds between feed polls.
            max_cycles: Stop after this many cycles (0 = unlimited).

        Returns:
            List of per-cycle result dicts.
        """
        self._running = True
        self.start_scheduler()
        results: list[dict] = []
        try:
            while self._running:
                self._cycle_count += 1
                result = await self.run_once()
                results.append(result)
                if result.get("trades"):
                    logger.info("Cycle %d: %d trade(s)", self._cycle_count, len(result["trades"]))
                if max_cycles and self._cycle_count >= max_cycles:
                    break
                await self._sleep(poll_interval)
        finally:
            await self.shutdown()
        return results
