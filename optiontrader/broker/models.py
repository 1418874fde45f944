"""Broker data models — feed events and SmartAPI interval names."""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Tick:
    """A last-traded-price event from the market-data feed."""

    token: str
    price: float
    timestamp: datetime
    volume: float = 0.0


@dataclass(frozen=True)
class HistoryRequest:
    """One historical-candle fetch for the bulk refresher."""

    token: str
    exchange: str
    interval_minutes: int
    from_time: datetime
    to_time: datetime


# ── Interval names ───────────────────────────────────────────────────────

HISTORICAL_INTERVALS: dict[int, str] = {
    1: "ONE_MINUTE",
    3: "THREE_MINUTE",
    5: "FIVE_MINUTE",
    10: "TEN_MINUTE",
    15: "FIFTEEN_MINUTE",
    30: "THIRTY_MINUTE",
    60: "ONE_HOUR",
    1440: "ONE_DAY",
}


def interval_name(minutes: int) -> str:
    """Map a candle interval in minutes to the SmartAPI interval name."""
    try:
        return HISTORICAL_INTERVALS[minutes]
    except KeyError:
        raise ValueError(
            f"Unsupported candle interval {minutes}m; "
            f"expected one of {sorted(HISTORICAL_INTERVALS)}"
        ) from None
