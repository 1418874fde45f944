"""Tests for optiontrader.backtest — candle replay through the live engine."""

import pytest

from optiontrader.backtest.engine import BacktestEngine
from optiontrader.config import StrategyConfig
from optiontrader.events import BUY, SELL
from optiontrader.instruments import Instrument
from optiontrader.strategy.models import Candle

from conftest import ist, make_candles


# ── Helpers ──────────────────────────────────────────────────────────────


def _instrument() -> Instrument:
    return Instrument("43650", "NIFTY24NOV24000CE", option_type="CE", lot_size=25)


def _candle(start, close, spread=1.0) -> Candle:
    return Candle(start, close - spread / 2, close + spread, close - spread, close, 100)


def _warmup() -> list[Candle]:
    """Twenty rising candles (100..138, step 2) from 05:00 to 09:45."""
    return make_candles([100.0 + 2 * i for i in range(20)], ist(10, 0))


# ── Tests ────────────────────────────────────────────────────────────────


class TestBacktestEngine:
    def test_default_warmup(self):
        assert BacktestEngine(StrategyConfig()).default_warmup() == 20

    @pytest.mark.asyncio
    async def test_too_little_data(self):
        with pytest.raises(ValueError):
            await BacktestEngine(StrategyConfig()).run(_instrument(), _warmup())

    @pytest.mark.asyncio
    async def test_breakout_then_take_profit(self):
        candles = _warmup() + [_candle(ist(10, 0), 160.0), _candle(ist(10, 15), 170.0)]
        result = await BacktestEngine(StrategyConfig()).run(_instrument(), candles)

        buy, sell = result["events"][:2]
        assert buy["action"] == BUY
        assert buy["price"] == 159.5
        assert buy["reason"] == "BB_RSI_Breakout_CE"
        assert (buy["stop_loss"], buy["take_profit"]) == (155.0, 165.5)

        assert sell["action"] == SELL
        assert sell["price"] == 169.5
        assert sell["reason"] == "TakeProfit Hit (CE)"
        assert sell["pnl"] == pytest.approx(250.0)
        assert result["stats"]["total_trades"] == len(result["trades"])
        assert result["stats"]["winning_trades"] >= 1

    @pytest.mark.asyncio
    async def test_open_position_closed_at_end_of_data(self):
        candles = _warmup() + [_candle(ist(10, 0), 160.0)]
        result = await BacktestEngine(StrategyConfig()).run(_instrument(), candles)

        assert [e["action"] for e in result["events"]] == [BUY, SELL]
        last = result["trades"][-1]
        assert last["reason"] == "End of Data"
        assert last["price"] == 160.0
        assert last["pnl"] == pytest.approx(12.5)
        assert result["stats"]["net_pnl"] == 12.5

    @pytest.mark.asyncio
    async def test_quiet_market_no_trades(self):
        candles = make_candles([100.0] * 40, ist(12, 0), spread=0.0)
        result = await BacktestEngine(StrategyConfig()).run(_instrument(), candles)
        assert result["trades"] == []
        assert result["stats"]["total_trades"] == 0
