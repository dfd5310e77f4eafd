"""Trend detection — higher-timeframe EMA bias, EMA slope and range position.

Provides:
- ``trend_bias()``: long/short/neutral bias from two reference timeframes.
- ``local_trend()``: up/down/neutral read of the evaluated timeframe itself.
- ``range_position()``: where the last close sits inside the recent range.
"""

import math
from dataclasses import dataclass
from typing import Literal, Mapping, Optional, Sequence

from signaldesk.market.models import Candle
from signaldesk.strategy.indicators import ema_of_closes
from signaldesk.strategy.models import StrategySettings

Bias = Literal["long", "short", "neutral"]


def ema_slope(values: Sequence[float], lookback: int) -> float:
    """Percent change of the EMA across its last *lookback* finite values."""
    recent = [v for v in values[-lookback:] if math.isfinite(v)]
    if len(recent) < 2:
        return 0.0
    first = recent[0]
    return (recent[-1] - first) / abs(first or 1) * 100


@dataclass(frozen=True)
class TimeframeBias:
    """EMA position and slope for one reference timeframe."""

    timeframe: str
    close: float
    ema: float
    slope: float

    @property
    def bullish(self) -> bool:
        return self.close > self.ema and self.slope >= 0

    @property
    def bearish(self) -> bool:
        return self.close < self.ema and self.slope <= 0


def _timeframe_bias(timeframe: str, candles: Sequence[Candle], ema_period: int) -> TimeframeBias:
    values = ema_of_closes(candles, ema_period)
    return TimeframeBias(
        timeframe=timeframe,
        close=candles[-1].close,
        ema=values[-1],
        slope=ema_slope(values, ema_period),
    )


def trend_bias(
    htf_candles: Mapping[str, Sequence[Candle]],
    ema_period: int = 200,
    timeframes: Sequence[str] = ("1H", "4H"),
) -> Bias:
    """Classify the higher-timeframe bias.

    Rules:
        - **long**: every reference close > EMA and EMA slope >= 0.
        - **short**: every reference close < EMA and EMA slope <= 0.
        - **neutral**: anything else, including a missing reference series
          or one too short to carry an EMA.
    """
    if not timeframes:
        return "neutral"
    biases = []
    for tf in timeframes:
        candles = htf_candles.get(tf) or []
        if not candles:
            return "neutral"
        biases.append(_timeframe_bias(tf, candles, ema_period))

    if all(b.bullish for b in biases):
        return "long"
    if all(b.bearish for b in biases):
        return "short"
    return "neutral"


def local_trend(close: float, ema_value: float, slope: float) -> str:
    """``up``/``down`` when price and EMA slope agree, else ``neutral``."""
    if not math.isfinite(ema_value):
        return "neutral"
    if slope > 0 and close > ema_value:
        return "up"
    if slope < 0 and close < ema_value:
        return "down"
    return "neutral"


# ── Range position ───────────────────────────────────────────────────────


def range_position(candles: Sequence[Candle], lookback: int) -> Optional[float]:
    """``(close - low) / (high - low)`` over the last *lookback* bars.

    Returns ``None`` when the window is too short or flat.
    """
    if lookback <= 1:
        return None
    window = candles[-lookback:]
    if len(window) < 2:
        return None
    lows = [c.low for c in window if math.isfinite(c.low)]
    highs = [c.high for c in window if math.isfinite(c.high)]
    if not lows or not highs:
        return None
    low, high = min(lows), max(highs)
    close = candles[-1].close
    if high <= low or not math.isfinite(close):
        return None
    return (close - low) / (high - low)


def range_allows_side(side: str, position: Optional[float], settings: StrategySettings) -> bool:
    """Block longs at the top of the range and shorts at the bottom."""
    if position is None:
        return True
    if side == "long" and position >= settings.range_high:
        return False
    if side == "short" and position <= settings.range_low:
        return False
    return True


def at_range_extreme(zone_type: str, position: Optional[float], settings: StrategySettings) -> bool:
    """True when a counter-trend entry from *zone_type* is allowed."""
    if position is None:
        return False
    if zone_type == "demand":
        return position <= settings.range_low
    return position >= settings.range_high
