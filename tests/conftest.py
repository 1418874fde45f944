"""Shared test helpers — simulated clock and candle builders."""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from optiontrader.strategy.models import Candle

IST = ZoneInfo("Asia/Kolkata")


class FakeClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)


def ist(hour: int, minute: int = 0, second: int = 0, day: int = 20) -> datetime:
    """A November 2024 instant in market time."""
    return datetime(2024, 11, day, hour, minute, second, tzinfo=IST)


def make_candles(
    closes: list[float],
    end: datetime,
    interval_minutes: int = 15,
    spread: float = 1.0,
) -> list[Candle]:
    """Candles ending just before *end*, ``high/low = close ± spread``."""
    start = end - timedelta(minutes=interval_minutes * len(closes))
    return [
        Candle(
            start_time=start + timedelta(minutes=interval_minutes * i),
            open=c - spread / 2,
            high=c + spread,
            low=c - spread,
            close=c,
            volume=100,
        )
        for i, c in enumerate(closes)
    ]


@pytest.fixture
def clock():
    return FakeClock(ist(10, 0))
