"""Binance public klines async client.

Fetches OHLCV candles from the spot or USD-M futures REST API.  No
credentials are needed for market data.
"""

import asyncio
import logging
from typing import Optional

import httpx

from signaldesk.market.models import BINANCE_INTERVALS, Candle, timeframe_seconds

logger = logging.getLogger("signaldesk.market.binance")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}

_ENDPOINTS = {
    "futures": ("https://fapi.binance.com", "/fapi/v1/klines", 1500),
    "spot": ("https://api.binance.com", "/api/v3/klines", 1000),
}


def parse_kline(row: list) -> Candle:
    """Convert one kline array ``[openTime, o, h, l, c, v, ...]``."""
    return Candle(
        time=int(row[0]) // 1000,
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


class BinanceClient:
    """Async client for one Binance market (``futures`` or ``spot``)."""

    def __init__(
        self,
        data_source: str = "futures",
        timeout: float = 15.0,
        retry_base_delay: float = _RETRY_BASE_DELAY,
    ) -> None:
        if data_source not in _ENDPOINTS:
            raise ValueError(f"Unknown data source '{data_source}'")
        self.data_source = data_source
        self._base_url, self._path, self.max_limit = _ENDPOINTS[data_source]
        self._timeout = timeout
        self._retry_base_delay = retry_base_delay

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(self, url: str, params: dict) -> httpx.Response:
        """GET with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(_MAX_RETRIES):
            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(url, params=params, timeout=self._timeout)

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    delay = self._retry_base_delay * (2 ** attempt)
                    logger.warning(
                        "Binance %s %s returned %d, retry %d/%d in %.1fs",
                        self.data_source, url, resp.status_code,
                        attempt + 1, _MAX_RETRIES, delay,
                    )
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    await asyncio.sleep(delay)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                delay = self._retry_base_delay * (2 ** attempt)
                logger.warning(
                    "Binance %s %s transport error (%s), retry %d/%d in %.1fs",
                    self.data_source, url, exc,
                    attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    # ── Candle data ──────────────────────────────────────────────────────

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int = 500) -> list[Candle]:
        """Fetch the latest *limit* candles (clamped to the market's maximum).

        Returns:
            List of ``Candle`` objects ordered oldest-first.
        """
        params = {
            "symbol": symbol,
            "interval": BINANCE_INTERVALS[timeframe],
            "limit": max(1, min(limit, self.max_limit)),
        }
        resp = await self._request_with_retry(self._base_url + self._path, params)
        return [parse_kline(row) for row in resp.json()]

    async def fetch_candles_range(
        self,
        symbol: str,
        timeframe: str,
        start_time: int,
        end_time: int,
        page_pause: float = 0.2,
    ) -> list[Candle]:
        """Page through klines between two unix-second bounds.

        Returns a time-sorted series with duplicate bars removed.
        """
        interval = BINANCE_INTERVALS[timeframe]
        step_ms = timeframe_seconds(timeframe) * 1000
        start_ms = max(0, start_time * 1000)
        end_ms = end_time * 1000
        by_time: dict[int, Candle] = {}

        while start_ms < end_ms:
            params = {
                "symbol": symbol,
                "interval": interval,
                "startTime": start_ms,
                "endTime": end_ms,
                "limit": self.max_limit,
            }
            resp = await self._request_with_retry(self._base_url + self._path, params)
            rows = resp.json()
            if not rows:
                break
            for row in rows:
                candle = parse_kline(row)
                by_time[candle.time] = candle

            start_ms = int(rows[-1][0]) + step_ms
            if len(rows) < self.max_limit:
                break
            if page_pause > 0:
                await asyncio.sleep(page_pause)

        return [by_time[t] for t in sorted(by_time)]
