"""Portfolio risk state — daily P&L circuit breaker and per-instrument cooldowns.

Both breakers only block *new entries*; exits of open positions are never
gated here.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from optiontrader.scheduler import Clock

logger = logging.getLogger("optiontrader")

HALT_MANUAL = "manual"
HALT_LIMIT = "limit"


class RiskManager:
    """Tracks realised daily P&L, the trading halt and cooldown timers.

    Args:
        clock: Time source for cooldown expiry.
        max_daily_loss: Positive loss limit; trading halts when
                        ``daily_pnl ≤ −max_daily_loss``.
        cooldown_minutes: Entry suppression after a losing exit.
        max_daily_profit: Optional profit target that also halts trading.
    """

    def __init__(
        self,
        clock: Clock,
        max_daily_loss: float,
        cooldown_minutes: float = 15.0,
        max_daily_profit: Optional[float] = None,
    ) -> None:
        if max_daily_loss <= 0:
            raise ValueError(f"max_daily_loss must be positive, got {max_daily_loss}")
        if cooldown_minutes < 0:
            raise ValueError(f"cooldown_minutes must be >= 0, got {cooldown_minutes}")
        self._clock = clock
        self._max_daily_loss = max_daily_loss
        self._max_daily_profit = max_daily_profit
        self._cooldown = timedelta(minutes=cooldown_minutes)
        self._daily_pnl: float = 0.0
        self._manual_halt: bool = False
        self._limit_halt: bool = False
        self._cooldowns: dict[str, datetime] = {}

    # ── Mutation ─────────────────────────────────────────────────────────

    def update_pnl(self, delta: float) -> float:
        """Add realised trade P&L and return the new daily total."""
        self._daily_pnl += delta
        if not self._limit_halt and self._limit_breached():
            self._limit_halt = True
            logger.warning(
                "Daily P&L limit reached (%.2f) — new entries halted.", self._daily_pnl,
            )
        return self._daily_pnl

    def halt_trading(self) -> None:
        """Operator halt; stays until :meth:`resume_trading`."""
        if not self._manual_halt:
            logger.warning("Trading halted manually.")
        self._manual_halt = True

    def resume_trading(self) -> bool:
        """Clear every halt unless a P&L limit is still breached.

        Returns:
            ``True`` if trading is active afterwards.
        """
        if self._limit_breached():
            logger.warning(
                "Resume refused: daily P&L %.2f is beyond the configured limits.",
                self._daily_pnl,
            )
            return False
        self._manual_halt = False
        self._limit_halt = False
        logger.info("Trading resumed.")
        return True

    def start_cooldown(self, token: str) -> Optional[datetime]:
        """Suppress entries on *token* for the cooldown duration."""
        if not self._cooldown:
            return None
        expiry = self._clock.now() + self._cooldown
        self._cooldowns[token] = expiry
        logger.info("Cooldown on %s until %s", token, expiry.isoformat())
        return expiry

    def reset_day(self) -> None:
        """Start a new trading day: zero P&L, clear the limit latch and cooldowns.

        A manual halt survives the rollover.
        """
        self._daily_pnl = 0.0
        self._limit_halt = False
        self._cooldowns.clear()

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def daily_pnl(self) -> float:
        return self._daily_pnl

    @property
    def halt_reason(self) -> Optional[str]:
        """``"manual"``, ``"limit"`` or ``None``."""
        if self._manual_halt:
            return HALT_MANUAL
        if self._limit_halt or self._limit_breached():
            return HALT_LIMIT
        return None

    def is_trading_halted(self) -> bool:
        return self.halt_reason is not None

    def is_on_cooldown(self, token: str) -> bool:
        expiry = self._cooldowns.get(token)
        if expiry is None:
            return False
        if self._clock.now() < expiry:
            return True
        del self._cooldowns[token]
        return False

    def cooldown_expiry(self, token: str) -> Optional[datetime]:
        return self._cooldowns.get(token)

    def _limit_breached(self) -> bool:
        if self._daily_pnl <= -self._max_daily_loss:
            return True
        return (
            self._max_daily_profit is not None
            and self._daily_pnl >= self._max_daily_profit
        )
