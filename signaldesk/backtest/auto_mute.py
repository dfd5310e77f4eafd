"""Auto-mute — silence a signal stream whose recent expectancy is negative."""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from signaldesk.backtest.outcomes import ExecutionCosts, evaluate_signal
from signaldesk.market.models import Candle
from signaldesk.strategy.models import Signal


@dataclass(frozen=True)
class AutoMuteDecision:
    muted: bool
    evaluated_trades: int
    expectancy_r: Optional[float]
    window_label: str
    reason: str


def compute_auto_mute(
    symbol: str,
    timeframe: str,
    signals: Iterable[Signal],
    candles: Sequence[Candle],
    data_source: str = "futures",
    gate_mode: str = "default",
    max_hold_bars: int = 60,
    window_trades: int = 20,
    min_trades_to_decide: int = 20,
    costs: Optional[ExecutionCosts] = None,
) -> AutoMuteDecision:
    """Decide whether the stream should be muted.

    Only signals of the same symbol, timeframe, data source and gate mode
    count (signals without a source/mode are treated as ``futures`` /
    ``default``).  The latest *window_trades* resolved trades are averaged;
    a negative mean mutes the stream.  Fewer than *min_trades_to_decide*
    resolved trades never mutes.
    """
    scoped = sorted(
        (
            s
            for s in signals
            if s.symbol == symbol
            and s.timeframe == timeframe
            and (s.data_source or "futures") == data_source
            and (s.gate_mode or "default") == gate_mode
        ),
        key=lambda s: s.timestamp,
    )
    resolved = [
        t
        for t in (evaluate_signal(s, candles, max_hold_bars, costs) for s in scoped)
        if t.resolved
    ]
    window = resolved[-window_trades:] if window_trades > 0 else []
    label = f"last {window_trades} trades"

    if len(window) < min_trades_to_decide:
        return AutoMuteDecision(
            muted=False,
            evaluated_trades=len(window),
            expectancy_r=None,
            window_label=label,
            reason=f"Not enough trades to decide ({len(window)}/{min_trades_to_decide}).",
        )

    expectancy = sum(t.r for t in window) / len(window)
    muted = expectancy < 0
    if muted:
        reason = f"Negative expectancy ({expectancy:.2f}R) over {label}."
    else:
        reason = f"Expectancy {expectancy:.2f}R over {label}."
    return AutoMuteDecision(
        muted=muted,
        evaluated_trades=len(window),
        expectancy_r=expectancy,
        window_label=label,
        reason=reason,
    )
