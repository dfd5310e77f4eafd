"""Meta-model features — market diagnostics and the fixed feature vector.

The same eight features feed training and live scoring:
``score, rr, stopPct, atrPct, adx, bbBw, emaSlope, trend``.  The first
three come from the signal, the rest from the candle window at the
signal bar.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np

from signaldesk.market.models import Candle
from signaldesk.strategy.indicators import (
    calculate_adx,
    calculate_atr,
    calculate_bollinger_bandwidth,
    calculate_ema,
)
from signaldesk.strategy.models import DEFAULT_STRATEGY, Signal, StrategySettings
from signaldesk.strategy.trend import ema_slope, local_trend

FEATURES: tuple[str, ...] = (
    "score",
    "rr",
    "stopPct",
    "atrPct",
    "adx",
    "bbBw",
    "emaSlope",
    "trend",
)

SLOPE_LOOKBACK = 30

TREND_CODES = {"up": 1.0, "down": -1.0}


@dataclass
class Diagnostics:
    """Market context attached to a signal at generation time."""

    atr_pct: float = math.nan
    adx: float = math.nan
    bb: float = math.nan
    ema_slope: float = math.nan
    trend: str = "neutral"
    range_pos: Optional[float] = None
    cooldown_secs: float = 0.0
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "atrPct": _json_num(self.atr_pct),
            "adx": _json_num(self.adx),
            "bb": _json_num(self.bb),
            "emaSlope": _json_num(self.ema_slope),
            "trend": self.trend,
            "rangePos": self.range_pos,
            "cooldownSecs": self.cooldown_secs,
            "reasons": list(self.reasons),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Diagnostics":
        data = data or {}
        return cls(
            atr_pct=_num(data.get("atrPct")),
            adx=_num(data.get("adx")),
            bb=_num(data.get("bb")),
            ema_slope=_num(data.get("emaSlope")),
            trend=data.get("trend") or "neutral",
            range_pos=data.get("rangePos"),
            cooldown_secs=_num(data.get("cooldownSecs"), 0.0),
            reasons=list(data.get("reasons") or []),
        )


def _num(value: Any, default: float = math.nan) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def _json_num(value: float) -> Optional[float]:
    return value if math.isfinite(value) else None


class FeatureSeries:
    """Indicator series over one candle window, sampled per bar.

    Computing the series once and sampling by index keeps training over
    many signals on the same window linear.
    """

    def __init__(
        self,
        candles: Sequence[Candle],
        settings: StrategySettings = DEFAULT_STRATEGY,
        slope_lookback: int = SLOPE_LOOKBACK,
    ) -> None:
        closes = [c.close for c in candles]
        self.candles = candles
        self.closes = closes
        self.ema = calculate_ema(closes, settings.ema_period)
        self.atr = calculate_atr(candles, settings.atr_period)
        self.adx = calculate_adx(candles, settings.adx_period)
        self.bb = calculate_bollinger_bandwidth(closes, settings.bb_period)
        self._slope_lookback = slope_lookback

    def at(self, index: int) -> Diagnostics:
        """Diagnostics as of bar *index* (negative indices allowed)."""
        if index < 0:
            index += len(self.candles)
        close = self.closes[index]
        atr = self.atr[index]
        atr_pct = atr / close * 100 if close and math.isfinite(atr) else math.nan
        start = max(0, index - self._slope_lookback + 1)
        slope = ema_slope(self.ema[start : index + 1], self._slope_lookback)
        return Diagnostics(
            atr_pct=atr_pct,
            adx=self.adx[index],
            bb=self.bb[index],
            ema_slope=slope,
            trend=local_trend(close, self.ema[index], slope),
        )


def feature_vector(
    features: Sequence[str], signal: Signal, diagnostics: Optional[Diagnostics]
) -> Optional[np.ndarray]:
    """Build the model input in *features* order.

    Returns ``None`` when any requested feature is unknown, missing or
    not finite.
    """
    diag = diagnostics or Diagnostics()
    values = {
        "score": signal.score,
        "rr": signal.rr,
        "stopPct": signal.stop_pct,
        "atrPct": diag.atr_pct,
        "adx": diag.adx,
        "bbBw": diag.bb,
        "emaSlope": diag.ema_slope,
        "trend": TREND_CODES.get(diag.trend, 0.0),
    }
    out = []
    for name in features:
        value = values.get(name)
        if value is None or not math.isfinite(value):
            return None
        out.append(float(value))
    return np.asarray(out, dtype=float)
