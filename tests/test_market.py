"""Tests for the Binance client, circuit breaker and failover candle feed.

HTTP calls are intercepted by monkeypatching ``httpx.AsyncClient.get``.
"""

import httpx
import pytest

from signaldesk.market.base import CandleFetchError, CandleSource
from signaldesk.market.binance_client import BinanceClient, parse_kline
from signaldesk.market.circuit_breaker import CLOSED, HALF_OPEN, OPEN, CircuitBreaker
from signaldesk.market.feed import CandleFeed, build_feed
from signaldesk.market.models import Candle, timeframe_seconds

T0 = 1_700_000_000


def _kline(ts: int, close: float = 100.0) -> list:
    return [ts * 1000, "99.5", "101.0", "99.0", str(close), "12.5", ts * 1000 + 299_999]


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ── Client ───────────────────────────────────────────────────────────────


class TestBinanceClient:
    def test_parse_kline(self):
        candle = parse_kline(_kline(T0, 100.25))
        assert candle == Candle(T0, 99.5, 101.0, 99.0, 100.25, 12.5)

    def test_unknown_source(self):
        with pytest.raises(ValueError):
            BinanceClient("margin")

    @pytest.mark.asyncio
    async def test_fetch_candles_clamps_limit(self, monkeypatch):
        captured = {}

        async def _mock_get(self, url, *, params=None, timeout=None, **kwargs):
            captured.update(url=url, params=params)
            return httpx.Response(
                200, json=[_kline(T0), _kline(T0 + 300)], request=httpx.Request("GET", url)
            )

        monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
        candles = await BinanceClient("futures").fetch_candles("BTCUSDT", "1H", limit=5000)
        assert captured["url"] == "https://fapi.binance.com/fapi/v1/klines"
        assert captured["params"] == {"symbol": "BTCUSDT", "interval": "1h", "limit": 1500}
        assert [c.time for c in candles] == [T0, T0 + 300]

    @pytest.mark.asyncio
    async def test_spot_limit(self, monkeypatch):
        captured = {}

        async def _mock_get(self, url, *, params=None, timeout=None, **kwargs):
            captured.update(url=url, params=params)
            return httpx.Response(200, json=[], request=httpx.Request("GET", url))

        monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
        assert await BinanceClient("spot").fetch_candles("BTCUSDT", "5m", limit=5000) == []
        assert captured["url"].startswith("https://api.binance.com")
        assert captured["params"]["limit"] == 1000

    @pytest.mark.asyncio
    async def test_retries_transient_status(self, monkeypatch):
        calls = []

        async def _mock_get(self, url, *, params=None, timeout=None, **kwargs):
            calls.append(url)
            status = 503 if len(calls) == 1 else 200
            body = [] if status == 503 else [_kline(T0)]
            return httpx.Response(status, json=body, request=httpx.Request("GET", url))

        monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
        client = BinanceClient("futures", retry_base_delay=0)
        candles = await client.fetch_candles("BTCUSDT", "5m")
        assert len(calls) == 2
        assert len(candles) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self, monkeypatch):
        async def _mock_get(self, url, *, params=None, timeout=None, **kwargs):
            return httpx.Response(429, json={}, request=httpx.Request("GET", url))

        monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
        with pytest.raises(httpx.HTTPStatusError):
            await BinanceClient("futures", retry_base_delay=0).fetch_candles("BTCUSDT", "5m")

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, monkeypatch):
        calls = []

        async def _mock_get(self, url, *, params=None, timeout=None, **kwargs):
            calls.append(url)
            return httpx.Response(400, json={"msg": "bad"}, request=httpx.Request("GET", url))

        monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
        with pytest.raises(httpx.HTTPStatusError):
            await BinanceClient("futures", retry_base_delay=0).fetch_candles("BTCUSDT", "5m")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_fetch_range_pages_and_dedupes(self, monkeypatch):
        client = BinanceClient("spot", retry_base_delay=0)
        client.max_limit = 2
        pages = [
            [_kline(T0), _kline(T0 + 300)],
            [_kline(T0 + 300), _kline(T0 + 600)],
            [],
        ]
        starts = []

        async def _mock_get(self, url, *, params=None, timeout=None, **kwargs):
            starts.append(params["startTime"])
            return httpx.Response(200, json=pages[len(starts) - 1], request=httpx.Request("GET", url))

        monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
        candles = await client.fetch_candles_range("BTCUSDT", "5m", T0, T0 + 3000, page_pause=0)
        assert [c.time for c in candles] == [T0, T0 + 300, T0 + 600]
        assert starts[:2] == [T0 * 1000, (T0 + 600) * 1000]


# ── Circuit breaker ──────────────────────────────────────────────────────


class TestCircuitBreaker:
    def test_backoff_doubles_and_caps(self):
        clock = FakeClock()
        breaker = CircuitBreaker("futures", clock=clock)
        assert breaker.state == CLOSED

        breaker.record_failure()
        assert breaker.backoff == 5.0
        assert breaker.state == OPEN
        assert breaker.allow() is False

        breaker.record_failure()
        assert breaker.backoff == 10.0
        for _ in range(5):
            breaker.record_failure()
        assert breaker.backoff == 60.0

    def test_half_open_after_expiry(self):
        clock = FakeClock()
        breaker = CircuitBreaker("spot", clock=clock)
        breaker.record_failure()
        clock.now += 5.0
        assert breaker.state == HALF_OPEN
        assert breaker.allow() is True

        breaker.record_success()
        assert breaker.state == CLOSED
        assert breaker.failures == 0
        breaker.record_failure()
        assert breaker.backoff == 5.0


# ── Feed ─────────────────────────────────────────────────────────────────


class FakeSource:
    def __init__(self, candles=None, error: Exception = None) -> None:
        self.candles = candles or []
        self.error = error
        self.calls = 0

    async def fetch_candles(self, symbol, timeframe, limit):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.candles[-limit:]


def _series(n: int = 5) -> list[Candle]:
    return [Candle(T0 + i * 300, 100.0, 101.0, 99.0, 100.0) for i in range(n)]


class TestCandleFeed:
    def test_sources_satisfy_protocol(self):
        assert isinstance(FakeSource(), CandleSource)
        assert isinstance(BinanceClient(), CandleSource)

    def test_needs_a_source(self):
        with pytest.raises(ValueError):
            CandleFeed([])

    @pytest.mark.asyncio
    async def test_failover_to_second_source(self):
        primary = FakeSource(error=httpx.ConnectError("down"))
        fallback = FakeSource(_series())
        feed = CandleFeed([("futures", primary), ("spot", fallback)], clock=FakeClock())
        candles = await feed.fetch_candles("BTCUSDT", "5m", 5)
        assert len(candles) == 5
        assert feed.last_source == "spot"
        assert feed.breakers["futures"].state == OPEN

    @pytest.mark.asyncio
    async def test_cache_hit_within_freshness(self):
        clock = FakeClock()
        source = FakeSource(_series())
        feed = CandleFeed([("futures", source)], clock=clock)
        await feed.fetch_candles("BTCUSDT", "5m", 5)
        clock.now += timeframe_seconds("5m") * 0.5
        await feed.fetch_candles("BTCUSDT", "5m", 3)
        assert source.calls == 1

        await feed.fetch_candles("BTCUSDT", "5m", 10)
        assert source.calls == 2

    @pytest.mark.asyncio
    async def test_all_sources_fail_without_cache(self):
        feed = CandleFeed(
            [("futures", FakeSource(error=RuntimeError("boom")))], clock=FakeClock()
        )
        with pytest.raises(CandleFetchError, match="futures: boom"):
            await feed.fetch_candles("BTCUSDT", "5m", 5)

    @pytest.mark.asyncio
    async def test_stale_cache_served_on_failure(self):
        clock = FakeClock()
        source = FakeSource(_series())
        feed = CandleFeed([("futures", source)], clock=clock)
        first = await feed.fetch_candles("BTCUSDT", "5m", 5)

        clock.now += 600
        source.error = RuntimeError("boom")
        assert await feed.fetch_candles("BTCUSDT", "5m", 5) == first

    @pytest.mark.asyncio
    async def test_open_breaker_is_skipped(self):
        clock = FakeClock()
        primary = FakeSource(error=RuntimeError("boom"))
        fallback = FakeSource(_series())
        feed = CandleFeed([("futures", primary), ("spot", fallback)], clock=clock)
        await feed.fetch_candles("BTCUSDT", "5m", 5)
        await feed.fetch_candles("ETHUSDT", "5m", 5)
        assert primary.calls == 1
        assert fallback.calls == 2

    def test_build_feed_order(self):
        feed = build_feed("spot")
        assert list(feed.breakers) == ["spot", "futures"]
