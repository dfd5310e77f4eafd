"""Score calibration — win rate and expectancy per signal-score bucket."""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from signaldesk.backtest.outcomes import EvaluatedTrade

# (lower bound inclusive, upper bound exclusive, label)
SCORE_BUCKETS: tuple[tuple[float, float, str], ...] = (
    (0, 60, "<60"),
    (60, 70, "60-69"),
    (70, 80, "70-79"),
    (80, 90, "80-89"),
    (90, 101, "90-100"),
)
THRESHOLD_CANDIDATES = (50, 60, 65, 70, 75, 80, 85, 90, 95)
MAX_RECENT_TRADES = 120
MIN_TRADES_FOR_SUGGESTION = 10


@dataclass(frozen=True)
class ScoreBucket:
    label: str
    trades: int
    win_rate_tp1: Optional[float]
    expectancy_r: Optional[float]

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "trades": self.trades,
            "winRateTp1": self.win_rate_tp1,
            "expectancyR": self.expectancy_r,
        }


@dataclass(frozen=True)
class ThresholdSuggestion:
    threshold: float
    trades: int
    expectancy_r: float

    def to_dict(self) -> dict:
        return {
            "threshold": self.threshold,
            "trades": self.trades,
            "expectancyR": self.expectancy_r,
        }


@dataclass(frozen=True)
class ScoreCalibration:
    evaluated_trades: int
    buckets: tuple[ScoreBucket, ...]
    suggestion: Optional[ThresholdSuggestion]

    def to_dict(self) -> dict:
        return {
            "evaluatedTrades": self.evaluated_trades,
            "buckets": [b.to_dict() for b in self.buckets],
            "suggestion": self.suggestion.to_dict() if self.suggestion else None,
        }


def _expectancy(trades: Sequence[EvaluatedTrade]) -> float:
    return sum(t.r for t in trades) / len(trades)


def suggest_threshold(
    trades: Sequence[EvaluatedTrade],
    candidates: Iterable[float] = THRESHOLD_CANDIDATES,
    min_trades: int = MIN_TRADES_FOR_SUGGESTION,
) -> Optional[ThresholdSuggestion]:
    """Pick the score cut-off whose surviving trades have the best expectancy.

    Candidates keeping fewer than *min_trades* trades are skipped; ``None``
    when no candidate qualifies.  Ties go to the lower threshold.
    """
    best: Optional[ThresholdSuggestion] = None
    for threshold in candidates:
        kept = [t for t in trades if t.signal.score >= threshold]
        if len(kept) < min_trades:
            continue
        expectancy = _expectancy(kept)
        if best is None or expectancy > best.expectancy_r:
            best = ThresholdSuggestion(threshold, len(kept), expectancy)
    return best


def score_calibration(
    trades: Iterable[EvaluatedTrade],
    max_trades: int = MAX_RECENT_TRADES,
    min_trades: int = MIN_TRADES_FOR_SUGGESTION,
) -> ScoreCalibration:
    """Bucket the most recent resolved *trades* by signal score.

    Args:
        trades: Evaluated trades ordered by signal timestamp.  Open trades
            are ignored.
        max_trades: Only the last *max_trades* resolved trades are used.
        min_trades: Minimum sample behind a threshold suggestion.

    Returns:
        ``ScoreCalibration`` with one row per score bucket (empty buckets
        report ``None`` ratios) and a threshold suggestion, or ``None``
        while the sample is too small.
    """
    resolved = [t for t in trades if t.resolved]
    recent = resolved[-max_trades:] if max_trades > 0 else []

    buckets = []
    for low, high, label in SCORE_BUCKETS:
        members = [t for t in recent if low <= t.signal.score < high]
        if not members:
            buckets.append(ScoreBucket(label, 0, None, None))
            continue
        wins = sum(1 for t in members if t.outcome == "tp1")
        buckets.append(
            ScoreBucket(label, len(members), wins / len(members), _expectancy(members))
        )

    return ScoreCalibration(
        evaluated_trades=len(recent),
        buckets=tuple(buckets),
        suggestion=suggest_threshold(recent, min_trades=min_trades),
    )
