"""Bulk historical refresh — bounded-concurrency fetch queue.

Runs one fetch per instrument through a semaphore and holds each slot for
an extra inter-call delay, so the broker's rate limit is respected no
matter how many instruments are configured.  Runs off the tick path.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Protocol

from optiontrader.broker.models import HistoryRequest
from optiontrader.strategy.models import Candle

logger = logging.getLogger("optiontrader")


class CandleSource(Protocol):
    """Anything that can fetch historical candles (broker client or mock)."""

    async def fetch_candles(
        self,
        token: str,
        exchange: str,
        interval_minutes: int,
        from_time: datetime,
        to_time: datetime,
    ) -> list[Candle]: ...


class HistoricalRefresher:
    """Fetches historical candles for many instruments.

    Args:
        source: Historical data source.
        max_concurrency: Maximum in-flight requests.
        call_delay: Seconds each slot stays occupied after a call.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        source: CandleSource,
        max_concurrency: int = 1,
        call_delay: float = 0.35,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self._source = source
        self._max_concurrency = max_concurrency
        self._call_delay = call_delay
        self._sleep = sleep

    async def refresh(self, requests: list[HistoryRequest]) -> dict[str, list[Candle]]:
        """Fetch every request; failed or empty instruments are omitted.

        Returns:
            ``{token: candles}`` for the instruments that returned data.
        """
        semaphore = asyncio.Semaphore(self._max_concurrency)
        results: dict[str, list[Candle]] = {}

        async def _fetch(req: HistoryRequest) -> None:
            async with semaphore:
                try:
                    candles = await self._source.fetch_candles(
                        req.token, req.exchange, req.interval_minutes,
                        req.from_time, req.to_time,
                    )
                except Exception as exc:
                    logger.warning(
                        "Historical fetch for %s failed: %s (series unchanged)",
                        req.token, exc,
                    )
                    candles = []
                else:
                    if not candles:
                        logger.warning(
                            "Historical fetch for %s returned no candles", req.token,
                        )
                finally:
                    if self._call_delay > 0:
                        await self._sleep(self._call_delay)
                if candles:
                    results[req.token] = candles

        await asyncio.gather(*(_fetch(r) for r in requests))
        return results
