"""Candle source protocol.

Defines the interface the worker consumes for market data.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from signaldesk.market.models import Candle


class CandleFetchError(RuntimeError):
    """Raised when no source could deliver candles."""


@runtime_checkable
class CandleSource(Protocol):
    """Anything that can supply an ascending candle series."""

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        """Return up to *limit* candles, oldest first."""
        ...
