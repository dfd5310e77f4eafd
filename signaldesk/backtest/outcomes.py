"""Outcome evaluator — classify a signal's single realized outcome.

Replays one signal against the candles that follow it and reports
whether it reached TP1, hit its stop, timed out, or is still open.
Returns are expressed in R (multiples of the entry-to-stop risk), net of
a round-trip basis-point cost.
"""

import bisect
import math
from dataclasses import dataclass
from typing import Optional, Sequence

from signaldesk.market.models import Candle
from signaldesk.strategy.models import Signal


@dataclass(frozen=True)
class ExecutionCosts:
    """Round-trip cost in basis points, applied to entry and exit notionals."""

    fee_bps: float = 2.0
    slippage_bps: float = 1.0

    @property
    def total_bps(self) -> float:
        fee = self.fee_bps if math.isfinite(self.fee_bps) else 0.0
        slip = self.slippage_bps if math.isfinite(self.slippage_bps) else 0.0
        return fee + slip


DEFAULT_COSTS = ExecutionCosts()


@dataclass(frozen=True)
class EvaluatedTrade:
    """Single-outcome classification of a signal."""

    signal: Signal
    outcome: str  # "tp1", "stop", "timeout" or "open"
    r: float
    bars_held: int

    @property
    def resolved(self) -> bool:
        return self.outcome != "open"


def cost_in_r(
    entry: float, exit_price: float, risk: float, costs: Optional[ExecutionCosts]
) -> float:
    """Express the round-trip cost of a trade as a fraction of its risk."""
    if costs is None:
        return 0.0
    total_bps = costs.total_bps
    if total_bps <= 0 or risk <= 0:
        return 0.0
    if not (math.isfinite(entry) and math.isfinite(exit_price)):
        return 0.0
    return (entry + exit_price) * (total_bps / 10_000) / risk


def first_index_at_or_after(candles: Sequence[Candle], timestamp: int) -> int:
    """Index of the first candle with ``time >= timestamp`` (``len`` if none)."""
    return bisect.bisect_left([c.time for c in candles], timestamp)


def evaluate_signal(
    signal: Signal,
    candles: Sequence[Candle],
    max_hold_bars: int = 60,
    costs: Optional[ExecutionCosts] = None,
) -> EvaluatedTrade:
    """Classify *signal* against *candles*.

    Scanning starts on the bar after the entry bar (the first candle at
    or after the signal timestamp) and runs for at most *max_hold_bars*
    bars.  When stop and TP1 are both touched within one bar the stop
    wins.  If neither is touched, the trade is a ``timeout`` marked to the
    last window close, unless the window ran into the end of the series,
    in which case it is still ``open``.

    A signal whose timestamp lies outside the candle window, or whose
    prices cannot define a positive risk, is reported as ``open``.
    """
    max_hold_bars = max(1, int(max_hold_bars))
    unresolved = EvaluatedTrade(signal, "open", 0.0, 0)
    if not candles:
        return unresolved
    if not candles[0].time <= signal.timestamp <= candles[-1].time:
        return unresolved

    entry, stop, tp1 = signal.entry, signal.stop, signal.tp1
    risk = abs(entry - stop)
    if not (math.isfinite(entry) and math.isfinite(stop) and math.isfinite(tp1)):
        return unresolved
    if entry <= 0 or risk <= 0:
        return unresolved

    start = min(first_index_at_or_after(candles, signal.timestamp), len(candles) - 1)
    end = min(len(candles) - 1, start + max_hold_bars)
    is_long = signal.side == "long"

    for i in range(start + 1, end + 1):
        candle = candles[i]
        stop_hit = candle.low <= stop if is_long else candle.high >= stop
        tp_hit = candle.high >= tp1 if is_long else candle.low <= tp1
        if stop_hit:
            return EvaluatedTrade(
                signal, "stop", -1 - cost_in_r(entry, stop, risk, costs), i - start
            )
        if tp_hit:
            return EvaluatedTrade(
                signal, "tp1", signal.rr - cost_in_r(entry, tp1, risk, costs), i - start
            )

    if end > start:
        exit_price = candles[end].close
        move = exit_price - entry if is_long else entry - exit_price
        r = move / risk - cost_in_r(entry, exit_price, risk, costs)
        outcome = "open" if end == len(candles) - 1 else "timeout"
        return EvaluatedTrade(signal, outcome, r, end - start)

    return unresolved


def resolve_outcome_time(
    signal: Signal, candles: Sequence[Candle], bars_held: int
) -> Optional[int]:
    """Time of the bar where a resolved trade closed."""
    if not candles or bars_held < 0:
        return None
    start = first_index_at_or_after(candles, signal.timestamp)
    return candles[min(start + bars_held, len(candles) - 1)].time
