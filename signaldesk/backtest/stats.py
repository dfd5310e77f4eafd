"""Performance statistics — pure functions over evaluated trades."""

from dataclasses import asdict, dataclass
from typing import Iterable, Optional, Sequence

from signaldesk.backtest.outcomes import EvaluatedTrade, ExecutionCosts, evaluate_signal
from signaldesk.market.models import Candle
from signaldesk.strategy.models import Signal


@dataclass(frozen=True)
class PerformanceSummary:
    """Aggregate over a set of evaluated trades.

    Ratios are ``None`` when there is nothing to compute them from:
    no resolved trades, no winners/losers, or no gross loss for the
    profit factor.
    """

    total_signals: int
    evaluated_trades: int
    tp1: int
    stop: int
    timeout: int
    open: int
    win_rate_tp1: Optional[float]
    expectancy_r: Optional[float]
    avg_win_r: Optional[float]
    avg_loss_r: Optional[float]
    profit_factor: Optional[float]
    max_drawdown_r: Optional[float]
    avg_bars_held: Optional[float]

    def to_dict(self) -> dict:
        data = asdict(self)
        return {_camel(k): v for k, v in data.items()}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() if part != "r" else "R" for part in rest)


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def aggregate_trades(trades: Iterable[EvaluatedTrade]) -> PerformanceSummary:
    """Summarize *trades* in the order given.

    Open trades are counted but excluded from every R statistic.  The
    drawdown walks the cumulative R curve in order, so callers should
    pass trades sorted by signal timestamp.

    Returns:
        ``PerformanceSummary`` with counts per outcome, TP1 win rate,
        expectancy, average win/loss, profit factor, max drawdown and
        average bars held.
    """
    trades = list(trades)
    counts = {"tp1": 0, "stop": 0, "timeout": 0, "open": 0}
    resolved = [t for t in trades if t.resolved]
    for t in trades:
        counts[t.outcome] += 1

    rs = [t.r for t in resolved]
    wins = [r for r in rs if r > 0]
    losses = [r for r in rs if r < 0]
    gross_profit = sum(wins)
    gross_loss = abs(sum(losses))
    n = len(resolved)

    return PerformanceSummary(
        total_signals=len(trades),
        evaluated_trades=n,
        tp1=counts["tp1"],
        stop=counts["stop"],
        timeout=counts["timeout"],
        open=counts["open"],
        win_rate_tp1=counts["tp1"] / n if n else None,
        expectancy_r=_mean(rs),
        avg_win_r=_mean(wins),
        avg_loss_r=_mean(losses),
        profit_factor=gross_profit / gross_loss if gross_loss > 0 else None,
        max_drawdown_r=max_drawdown(rs) if n else None,
        avg_bars_held=_mean([t.bars_held for t in resolved]),
    )


def summarize_performance(
    signals: Iterable[Signal],
    candles: Sequence[Candle],
    max_hold_bars: int = 60,
    costs: Optional[ExecutionCosts] = None,
) -> PerformanceSummary:
    """Evaluate *signals* against one candle series and aggregate them."""
    ordered = sorted(signals, key=lambda s: s.timestamp)
    return aggregate_trades(
        evaluate_signal(s, candles, max_hold_bars, costs) for s in ordered
    )


def max_drawdown(rs: Iterable[float]) -> float:
    """Largest peak-to-trough drop of the cumulative R curve, as a positive number."""
    cumulative = 0.0
    peak = 0.0
    max_dd = 0.0
    for r in rs:
        cumulative += r
        if cumulative > peak:
            peak = cumulative
        dd = peak - cumulative
        if dd > max_dd:
            max_dd = dd
    return max_dd
