"""Signal generator — zone pullbacks, squeeze breakouts and trend mode.

Three entry rules share one pipeline:

- **Zone pullback**: the last bar trades into an unmitigated supply/demand
  zone and prints a rejection wick, with the higher-timeframe bias behind
  it (or the bar sitting at a range extreme).
- **Squeeze breakout**: Bollinger bandwidth is compressed and the close
  breaks the Donchian channel.
- **Trend mode**: skips zones entirely; follows the higher-timeframe bias
  with ATR-based stop/target while ADX shows a minimum of direction.

Every candidate passes the quality gate and is then deduplicated
against history before it becomes a :class:`Signal`.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Sequence

from signaldesk.backtest.outcomes import evaluate_signal
from signaldesk.market.models import Candle
from signaldesk.strategy.gate import bars_between, gate_rejection
from signaldesk.strategy.history import SignalHistory
from signaldesk.strategy.indicators import (
    calculate_adx,
    calculate_atr,
    calculate_bollinger_bandwidth,
    calculate_donchian,
    calculate_ema,
)
from signaldesk.strategy.models import (
    DEFAULT_GATE,
    DEFAULT_STRATEGY,
    QualityGateConfig,
    Signal,
    StrategySettings,
    Zone,
)
from signaldesk.strategy.trend import (
    Bias,
    at_range_extreme,
    ema_slope,
    range_allows_side,
    range_position,
    trend_bias,
)
from signaldesk.strategy.zones import active_zones, detect_zones

logger = logging.getLogger("signaldesk.strategy.signals")

DEDUPE_MINUTES = 15
REJECTION_WICK_FRACTION = 0.35
TARGET_R = 2.0

TREND_MIN_ADX = 12.0
TREND_STOP_ATR = 2.2
TREND_TARGET_ATR = TREND_STOP_ATR * 2
TREND_OPEN_WINDOW_BARS = 60


@dataclass
class SignalRequest:
    """Everything one generator call needs for a symbol/timeframe."""

    symbol: str
    timeframe: str
    candles: Sequence[Candle]
    htf_candles: Mapping[str, Sequence[Candle]] = field(default_factory=dict)
    history: SignalHistory = field(default_factory=SignalHistory)
    gate: QualityGateConfig = DEFAULT_GATE
    settings: StrategySettings = DEFAULT_STRATEGY
    trend_mode: bool = False
    dedupe_minutes: float = DEDUPE_MINUTES


# ── Scoring helpers ──────────────────────────────────────────────────────


def score_signal(trend_aligned: bool, rr: float, stop_pct: float, adx: float) -> float:
    """Weighted quality score on a 0–100 scale.

    +20 base, +40 trend aligned, +15 rr >= 2, +15 stop < 0.4 %,
    +10 ADX > 20; capped at 100.
    """
    score = 0.0
    if trend_aligned:
        score += 40
    if rr >= 2:
        score += 15
    if stop_pct < 0.4:
        score += 15
    if adx > 20:
        score += 10
    return min(100.0, score + 20)


def has_rejection_wick(candle: Candle, zone_type: str) -> bool:
    """Wick longer than 35 % of the bar range, with the body closing away from it."""
    bar_range = candle.high - candle.low
    if bar_range <= 0:
        return False
    upper_wick = candle.high - max(candle.open, candle.close)
    lower_wick = min(candle.open, candle.close) - candle.low
    if zone_type == "demand":
        return lower_wick / bar_range > REJECTION_WICK_FRACTION and candle.close > candle.open
    return upper_wick / bar_range > REJECTION_WICK_FRACTION and candle.close < candle.open


def zone_touched_by(zone: Zone, candle: Candle) -> bool:
    if zone.zone_type == "demand":
        return zone.contains(candle.low)
    return zone.contains(candle.high)


def _range_label(position: Optional[float]) -> str:
    if position is None:
        return "Range pos n/a"
    return f"Range pos {position * 100:.0f}%"


def _target(side: str, entry: float, distance: float, multiple: float) -> float:
    return entry + distance * multiple if side == "long" else entry - distance * multiple


def _fmt(value: float, spec: str) -> str:
    return format(value, spec) if math.isfinite(value) else "n/a"


# ── Generator ────────────────────────────────────────────────────────────


def generate_signals(request: SignalRequest) -> list[Signal]:
    """Return the new, gated and deduplicated signals for the last bar.

    Fewer than ``ema_period + 5`` candles yields no signals.
    """
    candles = request.candles
    settings = request.settings
    if len(candles) < settings.ema_period + 5:
        return []

    position = range_position(candles, settings.range_lookback)
    bias = trend_bias(request.htf_candles, settings.ema_period, settings.htf_timeframes)
    if request.trend_mode:
        candidates = _trend_candidates(request, bias, position)
    else:
        candidates = _zone_candidates(request, bias, position)
        if settings.enable_squeeze:
            candidates += _squeeze_candidates(request, bias, position)

    return dedupe_signals(candidates, request.history, request.dedupe_minutes * 60)


def _candidate(
    request: SignalRequest,
    side: str,
    entry: float,
    stop: float,
    tp1: float,
    score: float,
    reasons: list[str],
    zone_type: str,
) -> Signal:
    return Signal(
        id="",
        symbol=request.symbol,
        timeframe=request.timeframe,
        side=side,
        entry=entry,
        stop=stop,
        tp1=tp1,
        rr=abs(tp1 - entry) / abs(entry - stop),
        score=score,
        reasons=tuple(reasons),
        timestamp=request.candles[-1].time,
        zone_type=zone_type,
    )


def _zone_candidates(
    request: SignalRequest, bias: Bias, position: Optional[float]
) -> list[Signal]:
    candles = request.candles
    settings = request.settings
    gate = request.gate
    closes = [c.close for c in candles]

    atr_values = calculate_atr(candles, settings.atr_period)
    ema_values = calculate_ema(closes, settings.ema_period)
    adx = calculate_adx(candles, settings.adx_period)[-1]
    atr = atr_values[-1]
    last = candles[-1]
    if not math.isfinite(atr):
        return []

    zones = active_zones(
        detect_zones(
            candles,
            atr_values,
            left=settings.pivot_left,
            right=settings.pivot_right,
            atr_mult=settings.zone_atr_mult,
        )
    )
    slope = ema_slope(ema_values, settings.ema_period)

    out: list[Signal] = []
    for zone in zones:
        if not zone_touched_by(zone, last) or not has_rejection_wick(last, zone.zone_type):
            continue
        side = "long" if zone.zone_type == "demand" else "short"
        aligned = bias == side
        if not aligned and not at_range_extreme(zone.zone_type, position, settings):
            continue
        if not range_allows_side(side, position, settings):
            continue

        entry = last.close
        if zone.zone_type == "demand":
            stop = zone.bottom - atr * gate.stop_atr_mult
        else:
            stop = zone.top + atr * gate.stop_atr_mult
        distance = abs(entry - stop)
        if distance <= 0:
            continue
        tp1 = _target(side, entry, distance, TARGET_R)
        rr = abs(tp1 - entry) / distance
        stop_pct = distance / entry * 100

        reasons = [
            f"HTF trend {bias}",
            f"Zone {zone.zone_type}",
            f"RR {rr:.2f}",
            f"Stop {stop_pct:.2f}%",
            f"ADX {_fmt(adx, '.1f')}",
            f"EMA slope {slope:.2f}%",
            _range_label(position),
            f"Rejection wick at {zone.zone_type}",
        ]
        candidate = _candidate(
            request,
            side,
            entry,
            stop,
            tp1,
            score_signal(aligned, rr, stop_pct, adx),
            reasons,
            zone.zone_type,
        )
        rejection = gate_rejection(
            candidate,
            atr,
            last.close,
            gate,
            zone=zone,
            last_same_side=request.history.latest(request.symbol, request.timeframe, side),
        )
        if rejection is None:
            out.append(candidate)
        else:
            logger.debug(
                "%s %s zone %s rejected: %s",
                request.symbol, request.timeframe, zone.id, rejection,
            )
    return out


def _squeeze_candidates(
    request: SignalRequest, bias: Bias, position: Optional[float]
) -> list[Signal]:
    candles = request.candles
    settings = request.settings
    gate = request.gate
    closes = [c.close for c in candles]
    last = candles[-1]

    bandwidth = calculate_bollinger_bandwidth(closes, settings.bb_period)[-1]
    # Channel of the bars before the last one; the last bar must close outside it.
    band = calculate_donchian(candles[:-1], settings.donchian_period)[-1]
    atr = calculate_atr(candles, settings.atr_period)[-1]
    adx = calculate_adx(candles, settings.adx_period)[-1]
    if not (math.isfinite(bandwidth) and math.isfinite(atr) and math.isfinite(band.mid)):
        return []
    if not bandwidth < settings.min_bandwidth * 100:
        return []

    if last.close > band.upper:
        side = "long"
        stop = min(last.low, band.mid) - atr * gate.stop_atr_mult
    elif last.close < band.lower:
        side = "short"
        stop = max(last.high, band.mid) + atr * gate.stop_atr_mult
    else:
        return []
    if not range_allows_side(side, position, settings):
        return []

    entry = last.close
    distance = abs(entry - stop)
    if distance <= 0:
        return []
    tp1 = _target(side, entry, distance, TARGET_R)
    candidate = _candidate(
        request,
        side,
        entry,
        stop,
        tp1,
        score_signal(bias == side, TARGET_R, distance / entry * 100, adx),
        [
            "Squeeze + Donchian breakout",
            f"Bandwidth {bandwidth:.2f}%",
            _range_label(position),
        ],
        "demand" if side == "long" else "supply",
    )
    rejection = gate_rejection(
        candidate,
        atr,
        last.close,
        gate,
        last_same_side=request.history.latest(request.symbol, request.timeframe, side),
    )
    if rejection is not None:
        logger.debug("%s %s squeeze rejected: %s", request.symbol, request.timeframe, rejection)
        return []
    return [candidate]


def _trend_candidates(
    request: SignalRequest, bias: Bias, position: Optional[float]
) -> list[Signal]:
    if bias == "neutral":
        return []
    candles = request.candles
    settings = request.settings
    gate = request.gate
    last = candles[-1]

    adx = calculate_adx(candles, settings.adx_period)[-1]
    if not (math.isfinite(adx) and adx >= TREND_MIN_ADX):
        return []
    atr = calculate_atr(candles, settings.atr_period)[-1]
    if not math.isfinite(atr) or atr <= 0:
        return []
    side = bias
    if not range_allows_side(side, position, settings):
        return []

    if _trend_suppressed(request, side):
        return []

    entry = last.close
    stop = entry - atr * TREND_STOP_ATR if side == "long" else entry + atr * TREND_STOP_ATR
    tp1 = _target(side, entry, atr, TREND_TARGET_ATR)
    rr = abs(tp1 - entry) / abs(entry - stop)
    stop_pct = abs(entry - stop) / entry * 100
    atr_pct = atr / entry * 100

    if stop_pct > gate.max_stop_pct or rr < gate.min_rr:
        return []
    if not gate.atr_pct_min <= atr_pct <= gate.atr_pct_max:
        return []

    return [
        _candidate(
            request,
            side,
            entry,
            stop,
            tp1,
            score_signal(True, rr, stop_pct, adx),
            [
                f"Trend {bias}",
                f"ATR stop {stop_pct:.2f}%",
                f"RR {rr:.2f}",
                _range_label(position),
            ],
            "demand" if side == "long" else "supply",
        )
    ]


def _trend_suppressed(request: SignalRequest, side: str) -> bool:
    """Cooldown and open-position checks for trend mode.

    A same-side signal still unresolved over the forward window blocks a
    new one; any signal (either side) inside ``cooldown_bars`` blocks
    entries entirely.
    """
    candles = request.candles
    last = candles[-1]
    cooldown = request.gate.cooldown_bars

    in_window = [
        s
        for s in request.history.for_stream(request.symbol, request.timeframe)
        if candles[0].time <= s.timestamp <= last.time
    ]
    if in_window:
        latest = in_window[-1]
        since = bars_between(latest.timestamp, last.time, request.timeframe)
        if latest.side == side:
            outcome = evaluate_signal(latest, candles, TREND_OPEN_WINDOW_BARS).outcome
            if outcome == "open":
                return True
        if since < cooldown:
            return True

    same_side = request.history.latest(request.symbol, request.timeframe, side)
    if same_side is not None:
        if bars_between(same_side.timestamp, last.time, request.timeframe) < cooldown:
            return True
    return False


# ── Dedupe ───────────────────────────────────────────────────────────────


def dedupe_signals(
    candidates: Sequence[Signal], history: SignalHistory, window_seconds: float
) -> list[Signal]:
    """Drop candidates with a same-side signal within *window_seconds*; assign ids."""
    out: list[Signal] = []
    for candidate in candidates:
        if history.has_within(
            candidate.symbol,
            candidate.timeframe,
            candidate.side,
            candidate.timestamp,
            window_seconds,
        ):
            continue
        if any(
            o.side == candidate.side and abs(o.timestamp - candidate.timestamp) < window_seconds
            for o in out
        ):
            continue
        out.append(replace(candidate, id=uuid.uuid4().hex))
    return out
