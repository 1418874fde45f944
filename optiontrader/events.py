"""Trade records and the sinks that consume them.

The engine emits one ``TradeEvent`` per BUY/SELL decision and a plain
alert string per anomaly.  Sinks are observers only: a failing sink is
logged and never affects trading state.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional, Protocol

logger = logging.getLogger("optiontrader")

BUY = "BUY"
SELL = "SELL"


@dataclass(frozen=True)
class TradeEvent:
    """One BUY or SELL decision."""

    timestamp: datetime
    token: str
    symbol: str
    action: str  # "BUY" or "SELL"
    price: float
    quantity: int
    stop_loss: Optional[float]
    take_profit: Optional[float]
    pnl: Optional[float]  # realised, SELL only
    reason: str
    daily_pnl: float

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class EventSink(Protocol):
    """Consumer of trade records and anomaly alerts."""

    def record_trade(self, event: TradeEvent) -> None: ...

    def alert(self, message: str) -> None: ...


class LoggingSink:
    """Writes every record to the application log."""

    def record_trade(self, event: TradeEvent) -> None:
        pnl = f"{event.pnl:.2f}" if event.pnl is not None else "-"
        logger.info(
            "%s %s x%d @ %.2f | SL %s TP %s | PnL %s | %s | Daily PnL %.2f",
            event.action, event.symbol, event.quantity, event.price,
            _fmt(event.stop_loss), _fmt(event.take_profit), pnl,
            event.reason, event.daily_pnl,
        )

    def alert(self, message: str) -> None:
        logger.warning("ALERT: %s", message)


class FanoutSink:
    """Forwards to several sinks, isolating each one's failures."""

    def __init__(self, *sinks: EventSink) -> None:
        self._sinks = list(sinks)

    def add(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def record_trade(self, event: TradeEvent) -> None:
        for sink in self._sinks:
            try:
                sink.record_trade(event)
            except Exception as exc:
                logger.warning("Sink %s failed on trade record: %s", type(sink).__name__, exc)

    def alert(self, message: str) -> None:
        for sink in self._sinks:
            try:
                sink.alert(message)
            except Exception as exc:
                logger.warning("Sink %s failed on alert: %s", type(sink).__name__, exc)


def _fmt(value: Optional[float]) -> str:
    return f"{value:.2f}" if value is not None else "-"
