"""Clock and candle-boundary scheduler.

The engine never reads wall-clock time directly: it asks an injected
``Clock``.  ``CandleScheduler`` sleeps until the next interval boundary
(aligned to the top of the interval in market-local time) and invokes a
synchronous callback, so tests and backtests can drive boundaries
without real waiting.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Protocol
from zoneinfo import ZoneInfo

logger = logging.getLogger("optiontrader")


class Clock(Protocol):
    """Source of the current instant (timezone-aware)."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in the given timezone."""

    def __init__(self, tz: str = "Asia/Kolkata") -> None:
        self._tz = ZoneInfo(tz)

    def now(self) -> datetime:
        return datetime.now(timezone.utc).astimezone(self._tz)


# ── Boundary arithmetic ──────────────────────────────────────────────────


def floor_boundary(now: datetime, interval_minutes: int) -> datetime:
    """Start of the bucket containing *now*.

    Buckets are aligned to multiples of *interval_minutes* counted from
    local midnight, not to process start time.
    """
    if interval_minutes <= 0:
        raise ValueError(f"interval_minutes must be positive, got {interval_minutes}")
    minutes = now.hour * 60 + now.minute
    floored = minutes - minutes % interval_minutes
    return now.replace(
        hour=floored // 60, minute=floored % 60, second=0, microsecond=0,
    )


def next_boundary(now: datetime, interval_minutes: int) -> datetime:
    """First bucket boundary strictly after *now*."""
    start = floor_boundary(now, interval_minutes)
    boundary = start + timedelta(minutes=interval_minutes)
    # Buckets never straddle midnight
    midnight = start.replace(hour=0, minute=0) + timedelta(days=1)
    return min(boundary, midnight)


# ── Scheduler ────────────────────────────────────────────────────────────


class CandleScheduler:
    """Fires *callback(boundary)* at every interval boundary until cancelled.

    Args:
        clock: Time source.
        interval_minutes: Bucket length.
        callback: Synchronous function invoked with the boundary instant.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        clock: Clock,
        interval_minutes: int,
        callback: Callable[[datetime], None],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._interval = interval_minutes
        self._callback = callback
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_fired: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, max_boundaries: int = 0) -> int:
        """Loop until cancelled; return the number of boundaries fired."""
        self._running = True
        fired = 0
        try:
            while self._running:
                now = self._clock.now()
                boundary = next_boundary(now, self._interval)
                if self._last_fired is not None and boundary <= self._last_fired:
                    boundary = next_boundary(self._last_fired, self._interval)
                await self._sleep(max((boundary - now).total_seconds(), 0.0))
                if not self._running:
                    break
                self._last_fired = boundary
                self._callback(boundary)
                fired += 1
                if max_boundaries and fired >= max_boundaries:
                    break
        finally:
            self._running = False
        return fired

    def start(self) -> asyncio.Task:
        """Schedule :meth:`run` on the running event loop."""
        self._task = asyncio.create_task(self.run())
        return self._task

    def cancel(self) -> None:
        """Stop firing; a pending sleep is cancelled immediately."""
        self._running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
