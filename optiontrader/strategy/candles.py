"""Candle aggregation — rolls live ticks into fixed wall-clock buckets.

Per instrument: ``NoCandle → Open → (tick)* → Closed & NewOpen``.  All
instruments share one bucket clock; ``finalize(boundary)`` closes every
instrument's current bucket at once.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, Iterator, Optional

from optiontrader.strategy.models import Candle, InstrumentSeries

logger = logging.getLogger("optiontrader")


class CandleAggregator:
    """Owns the per-instrument series table for one engine instance.

    Args:
        interval_minutes: Bucket length.
        max_candles: History cap per instrument; oldest evicted first.
        bucket_start: Start of the bucket that is open right now.
    """

    def __init__(
        self,
        interval_minutes: int,
        max_candles: int,
        bucket_start: datetime,
    ) -> None:
        if interval_minutes <= 0:
            raise ValueError(f"interval_minutes must be positive, got {interval_minutes}")
        if max_candles <= 0:
            raise ValueError(f"max_candles must be positive, got {max_candles}")
        self._interval = timedelta(minutes=interval_minutes)
        self._max_candles = max_candles
        self._bucket_start = bucket_start
        self._table: list[InstrumentSeries] = []
        self._index: dict[str, int] = {}

    # ── Table ────────────────────────────────────────────────────────────

    def register(self, series: InstrumentSeries) -> InstrumentSeries:
        """Add an instrument and open its first bucket."""
        if series.token in self._index:
            raise ValueError(f"Instrument {series.token} already registered")
        if series.current_candle is None:
            series.current_candle = self._fresh_candle(self._bucket_start, series.last_price)
        self._index[series.token] = len(self._table)
        self._table.append(series)
        return series

    def series(self, token: str) -> Optional[InstrumentSeries]:
        idx = self._index.get(token)
        return self._table[idx] if idx is not None else None

    def last_price(self, token: str) -> Optional[float]:
        series = self.series(token)
        return series.last_price if series is not None else None

    def __contains__(self, token: str) -> bool:
        return token in self._index

    def __iter__(self) -> Iterator[InstrumentSeries]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)

    @property
    def bucket_start(self) -> datetime:
        return self._bucket_start

    @property
    def bucket_end(self) -> datetime:
        return self._bucket_start + self._interval

    # ── Mutation ─────────────────────────────────────────────────────────

    def seed(self, token: str, candles: Iterable[Candle]) -> int:
        """Replace an instrument's history with fetched candles.

        Candles without prices, and any candle at or after the open bucket's
        start, are dropped.  Returns the number of candles kept.
        """
        series = self.series(token)
        if series is None:
            raise KeyError(f"Unknown instrument: {token}")
        history = [
            c for c in candles
            if c.has_price and c.start_time < self._bucket_start
        ]
        series.candles = history[-self._max_candles:]
        if series.last_price is None and series.candles:
            series.last_price = series.candles[-1].close
            if not series.current_candle.has_price:
                series.current_candle.update(series.last_price)
        return len(series.candles)

    def update(self, token: str, price: float, volume: float = 0.0) -> bool:
        """Fold a tick into the instrument's open bucket.

        Returns ``False`` for an unknown instrument.
        """
        series = self.series(token)
        if series is None:
            return False
        series.current_candle.update(price, volume)
        series.last_price = price
        return True

    def finalize(self, boundary: datetime, keep: bool = True) -> int:
        """Close the open bucket for every instrument and open the next.

        A bucket that ever received a price is appended to history stamped
        with its own start, which can lie several intervals before
        *boundary* after a gap.  With *keep* false the bucket is dropped
        instead (e.g. outside market hours).  The new bucket is seeded with
        the last known price.  Calling again for the same (or an earlier)
        boundary is a no-op.

        Returns:
            Number of candles appended.
        """
        if boundary <= self._bucket_start:
            return 0

        closed_start = self._bucket_start
        appended = 0
        for series in self._table:
            candle = series.current_candle
            if keep and candle is not None and candle.has_price:
                candle.start_time = closed_start
                series.candles.append(candle)
                overflow = len(series.candles) - self._max_candles
                if overflow > 0:
                    del series.candles[:overflow]
                appended += 1
            series.current_candle = self._fresh_candle(boundary, series.last_price)

        self._bucket_start = boundary
        logger.debug(
            "Finalized bucket %s: %d candle(s) appended", closed_start.isoformat(), appended,
        )
        return appended

    @staticmethod
    def _fresh_candle(start: datetime, seed_price: Optional[float]) -> Candle:
        candle = Candle(start_time=start)
        if seed_price is not None:
            candle.update(seed_price)
        return candle
