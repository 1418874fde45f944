"""Telegram notifier — forwards trade records and alerts to a chat.

``record_trade``/``alert`` only enqueue; an async worker posts to the Bot
API, so the tick path never waits on the network.
"""

import asyncio
import logging

import httpx

from optiontrader.events import TradeEvent

logger = logging.getLogger("optiontrader")

_MAX_QUEUED = 500


def format_trade(event: TradeEvent) -> str:
    """Plain-text trade message."""
    lines = [
        f"{event.action} {event.symbol} x{event.quantity} @ {event.price:.2f}",
        f"Reason: {event.reason}",
    ]
    if event.stop_loss is not None and event.take_profit is not None:
        lines.append(f"SL {event.stop_loss:.2f} | TP {event.take_profit:.2f}")
    if event.pnl is not None:
        lines.append(f"P&L: {event.pnl:.2f}")
    lines.append(f"Daily P&L: {event.daily_pnl:.2f}")
    return "\n".join(lines)


class TelegramNotifier:
    """Event sink that posts to one Telegram chat.

    Args:
        bot_token: Bot API token.
        chat_id: Destination chat.
        api_base: Bot API root, overridable for tests.
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        api_base: str = "https://api.telegram.org",
    ) -> None:
        self._url = f"{api_base}/bot{bot_token}/sendMessage"
        self._chat_id = chat_id
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=_MAX_QUEUED)

    # ── Sink ─────────────────────────────────────────────────────────────

    def record_trade(self, event: TradeEvent) -> None:
        self._enqueue(format_trade(event))

    def alert(self, message: str) -> None:
        self._enqueue(f"⚠️ {message}")

    def _enqueue(self, text: str) -> None:
        try:
            self._queue.put_nowait(text)
        except asyncio.QueueFull:
            logger.warning("Telegram queue full; message dropped")

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ── Delivery ─────────────────────────────────────────────────────────

    async def send(self, text: str) -> bool:
        """Post one message; failures are logged, never raised."""
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    self._url,
                    json={"chat_id": self._chat_id, "text": text},
                    timeout=10.0,
                )
            resp.raise_for_status()
            return True
        except httpx.HTTPError as exc:
            logger.error("Telegram notification error: %s", exc)
            return False

    async def drain(self) -> int:
        """Send everything queued; returns the number of messages sent."""
        sent = 0
        while not self._queue.empty():
            if await self.send(self._queue.get_nowait()):
                sent += 1
        return sent

    async def run(self) -> None:
        """Deliver queued messages until cancelled."""
        while True:
            text = await self._queue.get()
            await self.send(text)
