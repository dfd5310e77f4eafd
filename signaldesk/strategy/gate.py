"""Quality gate — static admission predicate and volatility-scaled adjustment."""

from __future__ import annotations

import math
import statistics
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from signaldesk.market.models import Candle, timeframe_seconds
from signaldesk.strategy.indicators import calculate_atr
from signaldesk.strategy.models import QualityGateConfig, Signal, Zone


# ── Static gate ──────────────────────────────────────────────────────────


def bars_between(earlier: int, later: int, timeframe: str) -> float:
    return (later - earlier) / timeframe_seconds(timeframe)


def gate_rejection(
    candidate: Signal,
    atr: float,
    close: float,
    gate: QualityGateConfig,
    zone: Optional[Zone] = None,
    last_same_side: Optional[Signal] = None,
) -> Optional[str]:
    """Return why *candidate* fails the gate, or ``None`` if it is admitted.

    Checks in order: stop distance, reward/risk, ATR% band, zone
    freshness (only when a zone is given), same-side cooldown, score.
    """
    stop_pct = candidate.stop_pct
    if not stop_pct <= gate.max_stop_pct:
        return f"stop {stop_pct:.2f}% > {gate.max_stop_pct:.2f}%"
    if candidate.rr < gate.min_rr:
        return f"rr {candidate.rr:.2f} < {gate.min_rr:.2f}"

    atr_pct = atr / close * 100 if close else math.nan
    if not gate.atr_pct_min <= atr_pct <= gate.atr_pct_max:
        return (
            f"atr {atr_pct:.3f}% outside "
            f"[{gate.atr_pct_min:.3f}, {gate.atr_pct_max:.3f}]"
        )
    if gate.require_fresh_zone and zone is not None and not zone.fresh:
        return f"zone {zone.id} already touched"

    if last_same_side is not None:
        since = bars_between(last_same_side.timestamp, candidate.timestamp, candidate.timeframe)
        if since < gate.cooldown_bars:
            return f"cooldown {since:.1f} < {gate.cooldown_bars} bars"

    if candidate.score < gate.score_min:
        return f"score {candidate.score:.0f} < {gate.score_min:.0f}"
    return None


def passes_quality_gate(
    candidate: Signal,
    atr: float,
    close: float,
    gate: QualityGateConfig,
    zone: Optional[Zone] = None,
    last_same_side: Optional[Signal] = None,
) -> bool:
    return gate_rejection(candidate, atr, close, gate, zone, last_same_side) is None


# ── Dynamic gate ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DynamicGateInfo:
    atr_median_pct: float
    atr_current_pct: float
    ratio: float
    lookback: int

    def to_dict(self) -> dict:
        return {
            "atrMedianPct": self.atr_median_pct,
            "atrCurrentPct": self.atr_current_pct,
            "ratio": self.ratio,
            "lookback": self.lookback,
        }


@dataclass(frozen=True)
class DynamicGate:
    gate: QualityGateConfig
    info: Optional[DynamicGateInfo] = None


def _clamp(value: float, low: float, high: float) -> float:
    if not math.isfinite(value):
        return low
    return min(max(value, low), high)


def atr_pct_series(candles: Sequence[Candle], atr_period: int) -> list[float]:
    """ATR as percent of close, skipping bars without a usable value."""
    atr_values = calculate_atr(candles, atr_period)
    return [
        atr / c.close * 100
        for c, atr in zip(candles, atr_values)
        if math.isfinite(atr) and math.isfinite(c.close) and c.close > 0
    ]


def adjust_gate(
    atr_pct_values: Sequence[float],
    base_gate: QualityGateConfig,
    lookback: int = 200,
    min_samples: Optional[int] = None,
) -> DynamicGate:
    """Rescale *base_gate* by the trailing ATR% regime.

    ``ratio = clamp(median(atr%) / midpoint(atr_pct_min, atr_pct_max), 0.6, 1.6)``
    scales the ATR band, the stop-distance cap and the stop multiplier;
    ``min_rr`` is nudged by ±5%.  With fewer than *min_samples* values
    (default ``min(50, lookback // 2)``) the base gate is returned as is.
    """
    if min_samples is None:
        min_samples = min(50, lookback // 2)
    recent = [v for v in atr_pct_values if math.isfinite(v)][-lookback:]
    if not recent or len(recent) < min_samples:
        return DynamicGate(base_gate)

    base_mid = base_gate.atr_pct_mid
    if not math.isfinite(base_mid) or base_mid <= 0:
        return DynamicGate(base_gate)

    median = statistics.median(recent)
    ratio = _clamp(median / base_mid, 0.6, 1.6)
    info = DynamicGateInfo(
        atr_median_pct=median,
        atr_current_pct=recent[-1],
        ratio=ratio,
        lookback=lookback,
    )
    if ratio == 1:
        return DynamicGate(base_gate, info)

    atr_pct_min = _clamp(base_gate.atr_pct_min * ratio, 0.01, 10)
    atr_pct_max = _clamp(base_gate.atr_pct_max * ratio, 0.02, 20)
    if atr_pct_max < atr_pct_min:
        atr_pct_max = atr_pct_min * 1.1

    max_stop = base_gate.max_stop_pct
    stop_mult = base_gate.stop_atr_mult
    min_rr = base_gate.min_rr
    gate = replace(
        base_gate,
        atr_pct_min=atr_pct_min,
        atr_pct_max=atr_pct_max,
        max_stop_pct=_clamp(max_stop * ratio, max_stop * 0.6, max_stop * 2),
        stop_atr_mult=_clamp(stop_mult * ratio, stop_mult * 0.6, stop_mult * 2),
        min_rr=_clamp(
            min_rr * (1.05 if ratio > 1 else 0.95), min_rr * 0.8, min_rr * 1.2
        ),
    )
    return DynamicGate(gate, info)


def build_dynamic_gate(
    candles: Sequence[Candle],
    base_gate: QualityGateConfig,
    atr_period: int = 14,
    lookback: int = 200,
    enabled: bool = True,
) -> DynamicGate:
    """Dynamic gate from a candle window; a no-op when disabled or short."""
    if not enabled or len(candles) < min(80, lookback):
        return DynamicGate(base_gate)
    return adjust_gate(atr_pct_series(candles, atr_period), base_gate, lookback)
