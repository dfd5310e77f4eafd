"""Candle feed — cached, failover-aware candle retrieval.

Tries the preferred market first and falls back to the other one,
skipping any source whose circuit breaker is open.  Results are cached
per symbol/timeframe for three quarters of a bar so a cycle never
refetches the same series.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, NamedTuple, Optional, Sequence

from signaldesk.market.base import CandleFetchError, CandleSource
from signaldesk.market.binance_client import BinanceClient
from signaldesk.market.circuit_breaker import CircuitBreaker
from signaldesk.market.models import Candle, timeframe_seconds

logger = logging.getLogger("signaldesk.market.feed")

CACHE_FRESHNESS = 0.75


class _CacheKey(NamedTuple):
    symbol: str
    timeframe: str


class _CacheEntry(NamedTuple):
    fetched_at: float
    limit: int
    candles: list[Candle]


class CandleFeed:
    """Serve candles from an ordered list of named sources.

    Args:
        sources: ``(name, source)`` pairs in preference order.
        clock: Monotonic time source, shared with the breakers.
    """

    def __init__(
        self,
        sources: Sequence[tuple[str, CandleSource]],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not sources:
            raise ValueError("CandleFeed needs at least one source")
        self._sources = list(sources)
        self._clock = clock
        self._breakers = {name: CircuitBreaker(name, clock=clock) for name, _ in sources}
        self._cache: dict[_CacheKey, _CacheEntry] = {}
        self.last_source: Optional[str] = None

    @property
    def breakers(self) -> dict[str, CircuitBreaker]:
        return dict(self._breakers)

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        """Return candles from cache or the first healthy source.

        When every source fails, a stale cached series is returned if one
        exists; otherwise ``CandleFetchError`` is raised.
        """
        key = _CacheKey(symbol, timeframe)
        cached = self._cache.get(key)
        freshness = timeframe_seconds(timeframe) * CACHE_FRESHNESS
        if (
            cached is not None
            and cached.limit >= limit
            and self._clock() - cached.fetched_at < freshness
        ):
            return cached.candles

        errors: list[str] = []
        for name, source in self._sources:
            breaker = self._breakers[name]
            if not breaker.allow():
                errors.append(f"{name}: backing off")
                continue
            try:
                candles = await source.fetch_candles(symbol, timeframe, limit)
            except Exception as exc:
                breaker.record_failure()
                logger.warning(
                    "%s %s fetch from %s failed (%s); backing off %.0fs",
                    symbol, timeframe, name, exc, breaker.backoff,
                )
                errors.append(f"{name}: {exc}")
                continue
            breaker.record_success()
            self._cache[key] = _CacheEntry(self._clock(), limit, candles)
            if self.last_source != name:
                logger.info("OHLCV source: %s", name)
            self.last_source = name
            return candles

        if cached is not None:
            logger.warning("%s %s: all sources failed, serving stale candles", symbol, timeframe)
            return cached.candles
        raise CandleFetchError(f"all sources failed ({'; '.join(errors)})")


def build_feed(data_source: str) -> CandleFeed:
    """Feed over Binance with *data_source* preferred and the other market as fallback."""
    order = ["futures", "spot"] if data_source == "futures" else ["spot", "futures"]
    return CandleFeed([(name, BinanceClient(name)) for name in order])
