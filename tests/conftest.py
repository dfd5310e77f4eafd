"""Shared candle fixtures.

Every series is deterministic and built on 5-minute bars from ``T0``.
"""

import pytest

from signaldesk.market.models import Candle
from signaldesk.strategy.models import StrategySettings

T0 = 1_700_000_000
STEP = 300


def make_candle(i: int, o: float, h: float, l: float, c: float, step: int = STEP) -> Candle:
    return Candle(time=T0 + i * step, open=o, high=h, low=l, close=c, volume=1000.0)


def flat_bar(i: int, price: float, step: int = STEP) -> Candle:
    return make_candle(i, price, price + 0.1, price - 0.1, price, step)


def demand_pullback_candles() -> list[Candle]:
    """40 bars: flat at 201, a swing low at index 20, and a final bar
    dipping back into the resulting demand zone with a bullish rejection wick.
    """
    candles = [flat_bar(i, 201.0) for i in range(39)]
    candles[20] = make_candle(20, 200.7, 200.8, 200.5, 200.7)
    candles.append(make_candle(39, 200.75, 200.88, 200.6, 200.85))
    return candles


def rising_candles(n: int, step: int = STEP, start: float = 100.0) -> list[Candle]:
    return [
        make_candle(i, start + i - 0.5, start + i + 0.2, start + i - 0.7, start + i, step)
        for i in range(n)
    ]


def trend_pullback_candles() -> list[Candle]:
    """50 bars rising 0.1 per bar, then 10 bars falling 0.15 per bar."""
    closes = [100 + 0.1 * i for i in range(50)]
    closes += [closes[-1] - 0.15 * k for k in range(1, 11)]
    return [make_candle(i, c, c + 0.1, c - 0.1, c) for i, c in enumerate(closes)]


@pytest.fixture
def fast_settings() -> StrategySettings:
    """Short EMA so compact fixtures carry a full indicator stack."""
    return StrategySettings(ema_period=20)


@pytest.fixture
def bullish_htf() -> dict[str, list[Candle]]:
    return {"1H": rising_candles(30, 3600), "4H": rising_candles(30, 14400)}
