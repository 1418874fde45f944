"""Tests for optiontrader.broker — SmartAPI client with mocked HTTP responses."""

import asyncio

import httpx
import pytest

from optiontrader.broker import smartapi_client
from optiontrader.broker.history import HistoricalRefresher
from optiontrader.broker.models import HistoryRequest, interval_name
from optiontrader.broker.smartapi_client import SmartApiClient, SmartApiError
from optiontrader.config import Config
from optiontrader.strategy.models import Candle

from conftest import ist


def _make_config() -> Config:
    return Config(
        smartapi_api_key="test-key",
        smartapi_client_code="A123456",
        smartapi_jwt_token="test-jwt",
        smartapi_base_url="https://smartapi.test/",
        strategy_config_path="strategy.json",
        instruments_path="data/instruments.json",
        db_path="data/optiontrader.db",
        log_level="INFO",
        health_port=8080,
        poll_interval_seconds=1.0,
    )


# ── Mock SmartAPI responses ──────────────────────────────────────────────

MOCK_CANDLES_RESPONSE = {
    "status": True,
    "message": "SUCCESS",
    "errorcode": "",
    "data": [
        ["2024-11-20T09:30:00+05:30", 101.0, 104.0, 100.5, 103.5, 1200],
        ["2024-11-20T09:15:00+05:30", 100.0, 102.0, 99.0, 101.0, 1500],
    ],
}

MOCK_LTP_RESPONSE = {
    "status": True,
    "message": "SUCCESS",
    "errorcode": "",
    "data": {
        "fetched": [
            {"exchange": "NFO", "tradingSymbol": "NIFTY24NOV24000CE",
             "symbolToken": "43650", "ltp": 121.35},
            {"exchange": "NFO", "tradingSymbol": "NIFTY24NOV24000PE",
             "symbolToken": "43651", "ltp": 88.1},
        ],
        "unfetched": [{"exchange": "NFO", "symbolToken": "99999", "message": "bad token"}],
    },
}

MOCK_ERROR_RESPONSE = {
    "status": False,
    "message": "Invalid Token",
    "errorcode": "AG8001",
    "data": None,
}


# ── Client ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fetch_candles_request_and_parse(monkeypatch):
    """Candle request body matches SmartAPI and rows are sorted oldest-first."""
    client = SmartApiClient(_make_config())
    captured = {}

    async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
        captured.update(url=url, headers=headers, body=json)
        return httpx.Response(200, json=MOCK_CANDLES_RESPONSE, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

    candles = await client.fetch_candles("43650", "NFO", 15, ist(9, 15), ist(10, 0))

    assert captured["url"] == (
        "https://smartapi.test/rest/secure/angelbroking/historical/v1/getCandleData"
    )
    assert captured["headers"]["X-PrivateKey"] == "test-key"
    assert captured["headers"]["Authorization"] == "Bearer test-jwt"
    assert captured["body"] == {
        "exchange": "NFO",
        "symboltoken": "43650",
        "interval": "FIFTEEN_MINUTE",
        "fromdate": "2024-11-20 09:15",
        "todate": "2024-11-20 10:00",
    }
    assert [c.start_time for c in candles] == [ist(9, 15), ist(9, 30)]
    first = candles[0]
    assert isinstance(first, Candle)
    assert (first.open, first.high, first.low, first.close) == (100.0, 102.0, 99.0, 101.0)
    assert first.volume == 1500


@pytest.mark.asyncio
async def test_fetch_ltp(monkeypatch, caplog):
    """Fetched quotes become ticks; unfetched ones are logged."""
    client = SmartApiClient(_make_config())
    captured = {}

    async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
        captured.update(json)
        return httpx.Response(200, json=MOCK_LTP_RESPONSE, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

    ticks = await client.fetch_ltp({"NFO": ["43650", "43651", "99999"]}, now=ist(10, 1))

    assert captured == {"mode": "LTP", "exchangeTokens": {"NFO": ["43650", "43651", "99999"]}}
    assert [(t.token, t.price) for t in ticks] == [("43650", 121.35), ("43651", 88.1)]
    assert all(t.timestamp == ist(10, 1) for t in ticks)
    assert "unfetched" in caplog.text


@pytest.mark.asyncio
async def test_status_false_raises(monkeypatch):
    client = SmartApiClient(_make_config())

    async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
        return httpx.Response(200, json=MOCK_ERROR_RESPONSE, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

    with pytest.raises(SmartApiError) as exc_info:
        await client.fetch_ltp({"NFO": ["43650"]})
    assert exc_info.value.error_code == "AG8001"


@pytest.mark.asyncio
async def test_retries_transient_errors(monkeypatch):
    """503 then success: the request is retried."""
    client = SmartApiClient(_make_config())
    monkeypatch.setattr(smartapi_client, "_RETRY_BASE_DELAY", 0.0)
    calls = []

    async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
        calls.append(url)
        status = 503 if len(calls) == 1 else 200
        return httpx.Response(status, json=MOCK_LTP_RESPONSE, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

    ticks = await client.fetch_ltp({"NFO": ["43650"]})
    assert len(calls) == 2
    assert len(ticks) == 2


@pytest.mark.asyncio
async def test_gives_up_after_max_retries(monkeypatch):
    client = SmartApiClient(_make_config())
    monkeypatch.setattr(smartapi_client, "_RETRY_BASE_DELAY", 0.0)

    async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

    with pytest.raises(httpx.ConnectError):
        await client.fetch_ltp({"NFO": ["43650"]})


@pytest.mark.asyncio
async def test_client_error_not_retried(monkeypatch):
    client = SmartApiClient(_make_config())
    calls = []

    async def _mock_post(self, url, *, headers=None, json=None, timeout=None):
        calls.append(url)
        return httpx.Response(401, json={}, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx.AsyncClient, "post", _mock_post)

    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_ltp({"NFO": ["43650"]})
    assert len(calls) == 1


def test_interval_names():
    assert interval_name(15) == "FIFTEEN_MINUTE"
    assert interval_name(1440) == "ONE_DAY"
    with pytest.raises(ValueError):
        interval_name(7)


# ── Historical refresher ─────────────────────────────────────────────────


class _FakeSource:
    """Returns one candle per token; tracks how many calls overlap."""

    def __init__(self, failing=(), empty=()):
        self.failing = set(failing)
        self.empty = set(empty)
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls: list[str] = []

    async def fetch_candles(self, token, exchange, interval_minutes, from_time, to_time):
        self.calls.append(token)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        self.in_flight -= 1
        if token in self.failing:
            raise SmartApiError("Access denied", "AB1004")
        if token in self.empty:
            return []
        return [Candle(ist(9, 15), 100.0, 101.0, 99.0, 100.5, 10)]


def _requests(*tokens):
    return [HistoryRequest(t, "NFO", 15, ist(9, 15), ist(10, 0)) for t in tokens]


class TestHistoricalRefresher:
    @pytest.mark.asyncio
    async def test_concurrency_bounded(self):
        source = _FakeSource()
        delays = []

        async def _sleep(seconds):
            delays.append(seconds)
            await asyncio.sleep(0)

        refresher = HistoricalRefresher(source, max_concurrency=2, call_delay=0.35, sleep=_sleep)
        results = await refresher.refresh(_requests("1", "2", "3", "4", "5"))

        assert set(results) == {"1", "2", "3", "4", "5"}
        assert source.max_in_flight <= 2
        assert delays == [0.35] * 5

    @pytest.mark.asyncio
    async def test_failures_and_empty_omitted(self, caplog):
        source = _FakeSource(failing={"2"}, empty={"3"})
        refresher = HistoricalRefresher(source, call_delay=0)
        results = await refresher.refresh(_requests("1", "2", "3"))

        assert list(results) == ["1"]
        assert source.calls == ["1", "2", "3"]
        assert "Historical fetch for 2 failed" in caplog.text
        assert "returned no candles" in caplog.text

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            HistoricalRefresher(_FakeSource(), max_concurrency=0)
