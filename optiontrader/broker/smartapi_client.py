"""Angel One SmartAPI REST async client.

Covers the two calls the engine needs from the broker: historical candles
for seeding series and last-traded prices for the polling feed.  Order
placement is not part of this client.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from optiontrader.broker.models import Tick, interval_name
from optiontrader.config import Config
from optiontrader.strategy.models import Candle

logger = logging.getLogger("optiontrader")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}

_HISTORICAL_PATH = "/rest/secure/angelbroking/historical/v1/getCandleData"
_QUOTE_PATH = "/rest/secure/angelbroking/market/v1/quote/"
_DATE_FORMAT = "%Y-%m-%d %H:%M"


class SmartApiError(Exception):
    """SmartAPI answered, but reported a failure."""

    def __init__(self, message: str, error_code: str = "") -> None:
        super().__init__(f"{message} ({error_code})" if error_code else message)
        self.error_code = error_code


class SmartApiClient:
    """Async client wrapping the SmartAPI market-data endpoints."""

    def __init__(self, config: Config) -> None:
        self._config = config
        self._base_url = config.smartapi_base_url.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {config.smartapi_jwt_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-UserType": "USER",
            "X-SourceID": "WEB",
            "X-ClientLocalIP": "127.0.0.1",
            "X-ClientPublicIP": "127.0.0.1",
            "X-MACAddress": "00:00:00:00:00:00",
            "X-PrivateKey": config.smartapi_api_key,
        }

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        headers=self._headers,
                        timeout=30.0,
                        **kwargs,
                    )

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "SmartAPI %s %s returned %d — retry %d/%d in %.1fs",
                        method.upper(), url, resp.status_code,
                        attempt + 1, _MAX_RETRIES, delay,
                    )
                    await asyncio.sleep(delay)
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "SmartAPI %s %s transport error (%s) — retry %d/%d in %.1fs",
                    method.upper(), url, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    async def _post(self, path: str, body: dict) -> Optional[object]:
        """POST *body* and return the envelope's ``data`` member."""
        resp = await self._request_with_retry(
            "post", f"{self._base_url}{path}", json=body,
        )
        payload = resp.json()
        if not payload.get("status", False):
            raise SmartApiError(
                payload.get("message") or "SmartAPI request failed",
                payload.get("errorcode") or "",
            )
        return payload.get("data")

    # ── Candle data ──────────────────────────────────────────────────────

    async def fetch_candles(
        self,
        token: str,
        exchange: str,
        interval_minutes: int,
        from_time: datetime,
        to_time: datetime,
    ) -> list[Candle]:
        """Fetch historical candles for one instrument.

        Args:
            token: Instrument token, e.g. ``"43650"``.
            exchange: Exchange segment, e.g. ``"NFO"``.
            interval_minutes: Candle length; see ``HISTORICAL_INTERVALS``.
            from_time: Inclusive start (market-local time).
            to_time: Inclusive end (market-local time).

        Returns:
            List of ``Candle`` objects ordered oldest-first.
        """
        body = {
            "exchange": exchange,
            "symboltoken": token,
            "interval": interval_name(interval_minutes),
            "fromdate": from_time.strftime(_DATE_FORMAT),
            "todate": to_time.strftime(_DATE_FORMAT),
        }
        data = await self._post(_HISTORICAL_PATH, body) or []

        candles: list[Candle] = []
        for row in data:
            ts, o, h, l, c, v = row[:6]
            candles.append(
                Candle(
                    start_time=datetime.fromisoformat(ts),
                    open=float(o),
                    high=float(h),
                    low=float(l),
                    close=float(c),
                    volume=float(v),
                )
            )
        candles.sort(key=lambda c: c.start_time)
        return candles

    # ── Quotes ───────────────────────────────────────────────────────────

    async def fetch_ltp(
        self,
        exchange_tokens: dict[str, list[str]],
        now: Optional[datetime] = None,
    ) -> list[Tick]:
        """Fetch last-traded prices for many instruments in one call.

        Args:
            exchange_tokens: ``{"NFO": ["43650", ...], ...}``.
            now: Timestamp stamped on the ticks (defaults to UTC now).

        Returns:
            One ``Tick`` per instrument the broker returned.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        body = {"mode": "LTP", "exchangeTokens": exchange_tokens}
        data = await self._post(_QUOTE_PATH, body) or {}

        ticks: list[Tick] = []
        for item in data.get("fetched", []):
            ltp = item.get("ltp")
            if ltp is None:
                continue
            ticks.append(
                Tick(token=str(item["symbolToken"]), price=float(ltp), timestamp=now)
            )
        for item in data.get("unfetched", []):
            logger.warning("SmartAPI quote unfetched: %s", item)
        return ticks
