"""Tests for optiontrader.engine — tick orchestration, risk gating and shutdown."""

from dataclasses import replace
from datetime import timedelta

import pytest

from optiontrader.broker.history import HistoricalRefresher
from optiontrader.broker.models import Tick
from optiontrader.config import RiskConfig, StrategyConfig
from optiontrader.engine import TradingEngine
from optiontrader.events import BUY, SELL
from optiontrader.instruments import Instrument
from optiontrader.repos.position_store import PositionStore
from optiontrader.risk.risk_manager import HALT_LIMIT, HALT_MANUAL
from optiontrader.strategy.session_filter import is_at_or_after, is_in_session

from conftest import FakeClock, ist, make_candles

CE_TOKEN = "43650"
CE2_TOKEN = "43652"


def _instrument(token: str = CE_TOKEN, option_type: str = "CE") -> Instrument:
    return Instrument(
        token=token,
        symbol=f"NIFTY24NOV{token}{option_type}",
        option_type=option_type,
        lot_size=25,
    )


class _RecordingSink:
    def __init__(self):
        self.trades = []
        self.alerts = []

    def record_trade(self, event):
        self.trades.append(event)

    def alert(self, message):
        self.alerts.append(message)


class _RisingHistory:
    """Thirty steadily rising closes (100..129) ending at *end*."""

    def __init__(self, end):
        self.end = end

    async def fetch_candles(self, token, exchange, interval_minutes, from_time, to_time):
        return make_candles([100.0 + i for i in range(30)], self.end)


class _FakeFeed:
    def __init__(self, ticks=(), error=None):
        self.ticks = list(ticks)
        self.error = error
        self.requests = []

    async def fetch_ltp(self, exchange_tokens):
        self.requests.append(exchange_tokens)
        if self.error is not None:
            raise self.error
        return self.ticks


async def _make_engine(now=None, instruments=None, config=None, feed=None, store=None):
    """Engine with seeded rising history; returns ``(engine, clock, sink, sleeps)``.

    With default settings: upper band ≈131.03, RSI 100, ATR 2.
    """
    clock = FakeClock(now or ist(10, 1))
    sink = _RecordingSink()
    sleeps: list[float] = []

    async def _sleep(seconds):
        sleeps.append(seconds)

    bucket = clock.now().replace(minute=clock.now().minute // 15 * 15, second=0)
    engine = TradingEngine(
        config or StrategyConfig(),
        clock,
        store if store is not None else PositionStore(None),
        sink=sink,
        instruments=instruments or [_instrument()],
        feed=feed,
        history=HistoricalRefresher(_RisingHistory(bucket), call_delay=0),
        sleep=_sleep,
    )
    await engine.initialize()
    return engine, clock, sink, sleeps


def _tick(price, moment=None, token=CE_TOKEN):
    return Tick(token=token, price=price, timestamp=moment or ist(10, 1))


# ── Initialization ───────────────────────────────────────────────────────


class TestInitialize:
    @pytest.mark.asyncio
    async def test_history_seeds_indicators(self):
        engine, _, _, _ = await _make_engine()
        series = engine.aggregator.series(CE_TOKEN)
        assert len(series.candles) == 30
        assert series.last_price == 129.0
        assert series.indicators.atr == pytest.approx(2.0)
        assert series.indicators.rsi == 100.0
        assert series.indicators.bollinger.upper == pytest.approx(131.03, abs=0.01)

    @pytest.mark.asyncio
    async def test_recovered_position_instrument_is_tracked(self, tmp_path):
        db_path = str(tmp_path / "state.db")
        first, _, _, _ = await _make_engine(store=PositionStore(db_path))
        first.on_tick(_tick(135.0))

        second, _, _, _ = await _make_engine(instruments=[_instrument(CE2_TOKEN)],
                                             store=PositionStore(db_path))
        assert CE_TOKEN in second.aggregator
        assert second.positions.get(CE_TOKEN).entry_price == 135.0


# ── Entries and exits ────────────────────────────────────────────────────


class TestTickPath:
    @pytest.mark.asyncio
    async def test_breakout_enters_with_atr_levels(self):
        engine, _, sink, _ = await _make_engine()
        events = engine.on_tick(_tick(135.0))

        assert len(events) == 1
        buy = events[0]
        assert buy.action == BUY
        assert buy.reason == "BB_RSI_Breakout_CE"
        assert buy.quantity == 25
        assert (buy.stop_loss, buy.take_profit) == (132.0, 139.0)
        assert sink.trades == events
        assert CE_TOKEN in engine.positions

    @pytest.mark.asyncio
    async def test_no_entry_below_band(self):
        engine, _, sink, _ = await _make_engine()
        assert engine.on_tick(_tick(130.0)) == []
        assert sink.trades == []

    @pytest.mark.asyncio
    async def test_stop_loss_exit_starts_cooldown(self):
        engine, clock, sink, _ = await _make_engine()
        engine.on_tick(_tick(135.0))
        events = engine.on_tick(_tick(131.9, ist(10, 2)))

        assert len(events) == 1
        sell = events[0]
        assert sell.action == SELL
        assert sell.reason == "StopLoss Hit (CE)"
        assert sell.pnl == pytest.approx(-77.5)
        assert engine.risk.daily_pnl == pytest.approx(-77.5)
        assert CE_TOKEN not in engine.positions

        assert engine.on_tick(_tick(140.0, ist(10, 3))) == []
        assert engine.risk.is_on_cooldown(CE_TOKEN)
        clock.advance(minutes=15)
        assert not engine.risk.is_on_cooldown(CE_TOKEN)

    @pytest.mark.asyncio
    async def test_take_profit_exit(self):
        engine, _, _, _ = await _make_engine()
        engine.on_tick(_tick(135.0))
        events = engine.on_tick(_tick(139.5, ist(10, 2)))
        assert events[0].reason == "TakeProfit Hit (CE)"
        assert events[0].pnl == pytest.approx(112.5)
        assert not engine.risk.is_on_cooldown(CE_TOKEN)

    @pytest.mark.asyncio
    async def test_open_position_blocks_second_entry(self):
        engine, _, sink, _ = await _make_engine()
        engine.on_tick(_tick(135.0))
        assert engine.on_tick(_tick(136.0, ist(10, 2))) == []
        assert len(sink.trades) == 1

    @pytest.mark.asyncio
    async def test_halt_blocks_entries_not_exits(self):
        engine, _, sink, _ = await _make_engine()
        engine.on_tick(_tick(135.0))
        engine.halt_trading()
        assert engine.on_tick(_tick(131.0, ist(10, 2)))[0].action == SELL
        assert engine.on_tick(_tick(140.0, ist(10, 3))) == []
        assert "Trading halted by operator" in sink.alerts

    @pytest.mark.asyncio
    async def test_loss_limit_halts_and_alerts(self):
        config = replace(StrategyConfig(), risk=RiskConfig(max_daily_loss=50))
        engine, _, sink, _ = await _make_engine(config=config)
        engine.on_tick(_tick(135.0))
        engine.on_tick(_tick(131.9, ist(10, 2)))
        assert engine.risk.halt_reason == HALT_LIMIT
        assert any("Daily P&L limit reached" in a for a in sink.alerts)
        assert engine.resume_trading() is False

    @pytest.mark.asyncio
    async def test_untracked_and_invalid_ticks(self):
        engine, _, sink, _ = await _make_engine()
        assert engine.on_tick(_tick(135.0, token="99999")) == []
        assert engine.on_tick(_tick(float("nan"))) == []
        assert engine.on_tick(_tick(-1.0)) == []
        assert len(sink.alerts) == 2
        assert engine.aggregator.series(CE_TOKEN).last_price == 129.0

    @pytest.mark.asyncio
    async def test_no_entry_outside_session(self):
        engine, _, _, _ = await _make_engine(now=ist(9, 1))
        assert engine.on_tick(_tick(135.0, ist(9, 2))) == []

    @pytest.mark.asyncio
    async def test_no_entry_after_square_off_time(self):
        engine, _, _, _ = await _make_engine(now=ist(15, 16))
        assert engine.on_tick(_tick(135.0, ist(15, 17))) == []

    @pytest.mark.asyncio
    async def test_tick_past_bucket_end_rolls_candle(self):
        engine, _, _, _ = await _make_engine()
        engine.halt_trading()
        engine.on_tick(_tick(130.0, ist(10, 5)))
        engine.on_tick(_tick(131.0, ist(10, 16)))

        series = engine.aggregator.series(CE_TOKEN)
        assert engine.aggregator.bucket_start == ist(10, 15)
        last = series.candles[-1]
        assert last.start_time == ist(10, 0)
        assert (last.open, last.high, last.close) == (129.0, 130.0, 130.0)
        assert series.current_candle.close == 131.0

    @pytest.mark.asyncio
    async def test_no_flat_candles_outside_market_hours(self):
        engine, _, _, _ = await _make_engine(now=ist(15, 16))
        engine.on_tick(_tick(130.0, ist(15, 20)))
        engine.on_tick(_tick(130.5, ist(15, 25)))

        boundary = ist(15, 30)
        while boundary <= ist(9, 15, day=21):
            engine.on_candle_boundary(boundary)
            boundary += timedelta(minutes=15)

        series = engine.aggregator.series(CE_TOKEN)
        assert len(series.candles) == 31
        assert series.candles[-1].start_time == ist(15, 15)
        assert series.candles[-1].close == 130.5
        assert engine.aggregator.bucket_start == ist(9, 15, day=21)

    @pytest.mark.asyncio
    async def test_new_day_resets_risk(self):
        engine, _, _, _ = await _make_engine()
        engine.risk.update_pnl(-100.0)
        engine.on_candle_boundary(ist(9, 15, day=21))
        assert engine.risk.daily_pnl == 0.0
        assert engine.status()["trading_date"] == "2024-11-21"


# ── Close-all and square-off ─────────────────────────────────────────────


class TestCloseAll:
    @pytest.mark.asyncio
    async def test_close_all_halts_and_paces_exits(self):
        engine, _, _, sleeps = await _make_engine(
            instruments=[_instrument(CE_TOKEN), _instrument(CE2_TOKEN)],
        )
        engine.on_tick(_tick(135.0))
        engine.on_tick(_tick(136.0, token=CE2_TOKEN))
        assert len(engine.positions) == 2

        events = await engine.close_all_positions()
        assert [e.reason for e in events] == ["Close All", "Close All"]
        assert [e.price for e in events] == [135.0, 136.0]
        assert sleeps == [0.2]
        assert engine.risk.halt_reason == HALT_MANUAL
        assert len(engine.positions) == 0

    @pytest.mark.asyncio
    async def test_square_off_once_per_day(self):
        engine, clock, _, _ = await _make_engine()
        engine.on_tick(_tick(135.0))
        assert await engine.check_square_off() == []

        clock.set(ist(15, 15))
        events = await engine.check_square_off()
        assert [e.reason for e in events] == ["EOD Square Off"]
        assert not engine.risk.is_trading_halted()
        assert await engine.check_square_off() == []

    @pytest.mark.asyncio
    async def test_shutdown_closes_positions(self):
        engine, _, sink, _ = await _make_engine()
        engine.on_tick(_tick(135.0))
        events = await engine.shutdown()
        assert events[0].reason == "Shutdown"
        assert sink.trades[-1].action == SELL


# ── Polling loop ─────────────────────────────────────────────────────────


class TestPolling:
    @pytest.mark.asyncio
    async def test_run_once_processes_ticks(self):
        feed = _FakeFeed([_tick(135.0)])
        engine, _, _, _ = await _make_engine(feed=feed)
        result = await engine.run_once()
        assert result["action"] == "polled"
        assert result["ticks"] == 1
        assert result["trades"][0]["action"] == BUY
        assert feed.requests == [{"NFO": [CE_TOKEN]}]

    @pytest.mark.asyncio
    async def test_feed_error_is_contained(self):
        feed = _FakeFeed(error=ConnectionError("quote service down"))
        engine, _, sink, _ = await _make_engine(feed=feed)
        result = await engine.run_once()
        assert result == {"action": "feed_error", "reason": "quote service down"}
        assert sink.alerts == ["Quote feed error: quote service down"]

    @pytest.mark.asyncio
    async def test_run_once_without_feed(self):
        engine, _, _, _ = await _make_engine()
        with pytest.raises(RuntimeError):
            await engine.run_once()

    @pytest.mark.asyncio
    async def test_run_stops_after_max_cycles_and_shuts_down(self):
        feed = _FakeFeed([_tick(135.0)])
        engine, _, sink, sleeps = await _make_engine(feed=feed)
        results = await engine.run(poll_interval=1.0, max_cycles=2)

        assert len(results) == 2
        assert sleeps == [1.0]
        assert not engine.running
        assert [t.action for t in sink.trades] == [BUY, SELL]
        assert sink.trades[-1].reason == "Shutdown"

    @pytest.mark.asyncio
    async def test_status(self):
        engine, _, _, _ = await _make_engine()
        engine.on_tick(_tick(135.0))
        engine.on_tick(_tick(136.0, ist(10, 2)))
        status = engine.status()
        assert status["halted"] is False
        assert status["instruments"] == 1
        assert status["bucket_start"] == ist(10, 0).isoformat()
        position = status["open_positions"][0]
        assert position["ltp"] == 136.0
        assert position["unrealized_pnl"] == 25.0


class TestSessionFilter:
    def test_inclusive_open_exclusive_close(self):
        assert is_in_session(ist(9, 15))
        assert not is_in_session(ist(9, 14, 59))
        assert not is_in_session(ist(15, 30))

    def test_square_off_cutoff(self):
        assert is_at_or_after(ist(15, 15), "15:15")
        assert not is_at_or_after(ist(15, 14), "15:15")
