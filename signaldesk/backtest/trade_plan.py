"""Trade-plan simulator — partial targets, stop and trend-flip exit.

Replays a signal bar by bar against forward candles.  Targets sit on an
R-multiple ladder; each bar may fill several of them at once.  After the
first target fills, closes on the wrong side of the EMA for
``confirm_bars`` consecutive bars trigger an exit.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence

from signaldesk.market.models import Candle
from signaldesk.strategy.models import Signal

DEFAULT_TP_LADDER: tuple[float, ...] = (1, 2, 3, 4)
FAST_TP_LADDER: tuple[float, ...] = (1.5, 3, 5, 8)
FAST_TIMEFRAMES = ("1m", "3m")


@dataclass(frozen=True)
class Target:
    r: float
    price: float


@dataclass(frozen=True)
class TradePlanEvent:
    """One step of a simulated plan: ``tp``, ``stop`` or ``exit``."""

    kind: str
    time: int
    label: str
    tp_from: Optional[int] = None
    tp_to: Optional[int] = None


@dataclass
class TradePlanResult:
    risk: float
    targets: list[Target]
    tps_hit: int = 0
    status: str = "open"  # "open", "stop" or "exit"
    events: list[TradePlanEvent] = field(default_factory=list)


def default_tp_ladder(timeframe: str) -> tuple[float, ...]:
    """Wider ladder on sub-5-minute timeframes where noise is larger in R."""
    return FAST_TP_LADDER if timeframe in FAST_TIMEFRAMES else DEFAULT_TP_LADDER


def compute_r_targets(signal: Signal, ladder: Sequence[float] = DEFAULT_TP_LADDER) -> list[Target]:
    """Target prices at each R multiple; empty when risk is not positive."""
    if not (math.isfinite(signal.entry) and math.isfinite(signal.stop)):
        return []
    risk = abs(signal.entry - signal.stop)
    if risk <= 0:
        return []
    sign = 1 if signal.side == "long" else -1
    return [Target(r, signal.entry + sign * risk * r) for r in ladder]


def simulate_trade_plan(
    signal: Signal,
    candles: Sequence[Candle],
    ema_values: Optional[Sequence[float]] = None,
    tp_ladder: Optional[Sequence[float]] = None,
    confirm_bars: int = 2,
    max_hold_bars: int = 240,
    require_tp_for_exit: bool = True,
) -> TradePlanResult:
    """Replay *signal* forward and collect its plan events.

    Args:
        signal: The signal to replay.
        candles: Candle series containing the signal bar and what follows.
        ema_values: EMA aligned to *candles* for the trend-flip exit; no
            exit is ever taken without it.
        tp_ladder: R multiples, defaulting to :func:`default_tp_ladder`.
        confirm_bars: Consecutive EMA violations required to exit.
        max_hold_bars: Bars simulated after the entry bar.
        require_tp_for_exit: Only arm the exit once a target has filled.

    Returns:
        ``TradePlanResult``.  Stop is checked before targets on every bar,
        so a bar touching both is a stop.
    """
    ladder = tuple(tp_ladder) if tp_ladder is not None else default_tp_ladder(signal.timeframe)
    confirm_bars = max(1, int(confirm_bars))
    max_hold_bars = max(1, int(max_hold_bars))

    entry, stop = signal.entry, signal.stop
    risk = abs(entry - stop)
    targets = compute_r_targets(signal, ladder)
    if not math.isfinite(risk):
        risk = 0.0
    result = TradePlanResult(risk=risk, targets=targets)
    if not candles or risk <= 0:
        return result

    entry_idx = next(
        (i for i, c in enumerate(candles) if c.time >= signal.timestamp), None
    )
    if entry_idx is None or entry_idx >= len(candles) - 1:
        return result

    is_long = signal.side == "long"
    next_target = 0
    violations = 0
    last_tp_index = -1
    end = min(len(candles) - 1, entry_idx + max_hold_bars)

    for i in range(entry_idx + 1, end + 1):
        candle = candles[i]
        if (candle.low <= stop) if is_long else (candle.high >= stop):
            result.events.append(TradePlanEvent("stop", candle.time, "STOP"))
            result.status = "stop"
            break

        hits = 0
        while next_target < len(targets):
            price = targets[next_target].price
            if not ((candle.high >= price) if is_long else (candle.low <= price)):
                break
            hits += 1
            next_target += 1

        if hits:
            first = result.tps_hit + 1
            result.tps_hit += hits
            last_tp_index = i
            label = f"TP{result.tps_hit}" if hits == 1 else f"TP{first}-TP{result.tps_hit}"
            result.events.append(
                TradePlanEvent("tp", candle.time, label, tp_from=first, tp_to=result.tps_hit)
            )

        if require_tp_for_exit and result.tps_hit == 0:
            continue
        if ema_values is None or i >= len(ema_values) or not math.isfinite(ema_values[i]):
            continue

        trend_ok = candle.close >= ema_values[i] if is_long else candle.close <= ema_values[i]
        violations = 0 if trend_ok else violations + 1
        if violations >= confirm_bars and i > last_tp_index:
            result.events.append(TradePlanEvent("exit", candle.time, "EXIT"))
            result.status = "exit"
            break

    return result
