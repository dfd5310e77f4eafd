"""Training pipeline for the meta-model.

Orchestrates: load signal export → fetch candles per group → label
outcomes → build features → walk-forward validation → fit logistic
regression → save model JSON.

Usage:
    python -m signaldesk.meta.train --in signals.json --out model.json
    python -m signaldesk.meta.train --in signals.json --walk-forward-folds 4 --drift-warn-z 0.5
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional, Sequence

import numpy as np

from signaldesk.backtest.outcomes import first_index_at_or_after
from signaldesk.market.models import Candle
from signaldesk.meta.data import (
    DATA_DIR,
    fetch_group_candles,
    group_signals,
    load_signal_export,
)
from signaldesk.meta.features import FEATURES, FeatureSeries, feature_vector
from signaldesk.meta.filter import DEFAULT_THRESHOLD, MetaModel, model_from_arrays
from signaldesk.strategy.models import Signal

logger = logging.getLogger("signaldesk.meta.train")

LOG_EPS = 1e-9
SIGMOID_CLAMP = 20.0
MIN_TEST_ROWS = 50
SMALL_SAMPLE_WARNING = 100


@dataclass(frozen=True)
class TrainingConfig:
    iterations: int = 2000
    learning_rate: float = 0.15
    l2: float = 0.02


@dataclass(frozen=True)
class TrainingRow:
    x: tuple[float, ...]
    y: int
    timestamp: int


@dataclass(frozen=True)
class ModelMetrics:
    accuracy: float
    log_loss: float
    base_rate: float


@dataclass(frozen=True)
class DriftStats:
    avg_abs_z: float
    max_abs_z: float
    z_means: tuple[float, ...] = ()


@dataclass(frozen=True)
class FoldResult:
    fold: int
    train_size: int
    test_size: int
    train_end: int
    accuracy: float
    log_loss: float
    base_rate: float
    drift_avg_abs_z: float
    drift_max_abs_z: float
    drift_flagged: bool


@dataclass
class TrainingReport:
    rows: int
    metrics: ModelMetrics
    folds: list[FoldResult] = field(default_factory=list)


# ── Labelling / features ─────────────────────────────────────────────────


def label_signal(
    signal: Signal, candles: Sequence[Candle], start_idx: int, max_hold_bars: int = 60
) -> Optional[int]:
    """1 if TP1 is reached before the stop within the hold window, else 0.

    Stop wins a same-bar tie; timeouts and unresolved trades are 0.
    Returns ``None`` for a signal whose prices cannot define a risk.
    """
    entry, stop, tp1 = signal.entry, signal.stop, signal.tp1
    if not all(math.isfinite(v) for v in (entry, stop, tp1)) or entry <= 0:
        return None
    if abs(entry - stop) <= 0:
        return None

    is_long = signal.side == "long"
    end = min(len(candles) - 1, start_idx + max_hold_bars)
    for candle in candles[start_idx + 1 : end + 1]:
        if (candle.low <= stop) if is_long else (candle.high >= stop):
            return 0
        if (candle.high >= tp1) if is_long else (candle.low <= tp1):
            return 1
    return 0


def build_training_rows(
    signals: Sequence[Signal],
    candles: Sequence[Candle],
    features: Sequence[str] = FEATURES,
    max_hold_bars: int = 60,
) -> list[TrainingRow]:
    """Label and featurize *signals* against one candle series.

    Signals past the end of the series or with incomplete features are
    dropped.
    """
    if not candles:
        return []
    series = FeatureSeries(candles)
    rows: list[TrainingRow] = []
    for signal in signals:
        idx = first_index_at_or_after(candles, signal.timestamp)
        if idx >= len(candles):
            continue
        label = label_signal(signal, candles, idx, max_hold_bars)
        if label is None:
            continue
        x = feature_vector(features, signal, series.at(idx))
        if x is None:
            continue
        rows.append(TrainingRow(tuple(float(v) for v in x), label, signal.timestamp))
    return rows


# ── Core math ────────────────────────────────────────────────────────────


def standardize(X: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Z-score columns; a zero standard deviation is replaced by 1.

    Returns ``(means, stds, X_normalized)``.
    """
    X = np.asarray(X, dtype=float)
    if X.size == 0:
        return np.zeros(0), np.zeros(0), X
    means = X.mean(axis=0)
    stds = X.std(axis=0)
    stds = np.where(stds == 0, 1.0, stds)
    return means, stds, (X - means) / stds


def standardize_with(X: np.ndarray, means: np.ndarray, stds: np.ndarray) -> np.ndarray:
    stds = np.where(np.asarray(stds) == 0, 1.0, stds)
    return (np.asarray(X, dtype=float) - means) / stds


def sigmoid(z: np.ndarray) -> np.ndarray:
    z = np.clip(z, -SIGMOID_CLAMP, SIGMOID_CLAMP)
    return 1.0 / (1.0 + np.exp(-z))


def train_logistic_regression(
    X: np.ndarray, y: np.ndarray, config: TrainingConfig = TrainingConfig()
) -> tuple[np.ndarray, float]:
    """Batch gradient descent on L2-regularized logistic loss.

    The bias is not regularized.  Raises ``ValueError`` on empty input.
    """
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    if X.ndim != 2 or X.shape[0] == 0:
        raise ValueError("Cannot train on an empty feature matrix")
    n, d = X.shape
    weights = np.zeros(d)
    bias = 0.0

    for _ in range(config.iterations):
        err = sigmoid(X @ weights + bias) - y
        grad_w = X.T @ err / n + config.l2 * weights
        grad_b = err.sum() / n
        weights -= config.learning_rate * grad_w
        bias -= config.learning_rate * grad_b

    return weights, float(bias)


def evaluate_model(
    X: np.ndarray, y: np.ndarray, weights: np.ndarray, bias: float
) -> ModelMetrics:
    """Accuracy at 0.5, mean log-loss and positive base rate."""
    y = np.asarray(y, dtype=float)
    if len(y) == 0:
        return ModelMetrics(accuracy=0.0, log_loss=0.0, base_rate=0.0)
    p = sigmoid(np.asarray(X, dtype=float) @ weights + bias)
    predictions = (p >= 0.5).astype(float)
    log_loss = -(y * np.log(p + LOG_EPS) + (1 - y) * np.log(1 - p + LOG_EPS))
    return ModelMetrics(
        accuracy=float((predictions == y).mean()),
        log_loss=float(log_loss.mean()),
        base_rate=float(y.mean()),
    )


def drift_stats(X: np.ndarray, means: np.ndarray, stds: np.ndarray) -> DriftStats:
    """Mean z-score per feature of *X* under a training standardization.

    ``avg_abs_z`` / ``max_abs_z`` summarize the absolute per-feature means.
    """
    X = np.asarray(X, dtype=float)
    if X.size == 0:
        return DriftStats(0.0, 0.0)
    z_means = standardize_with(X, means, stds).mean(axis=0)
    abs_means = np.abs(z_means)
    return DriftStats(
        avg_abs_z=float(abs_means.mean()),
        max_abs_z=float(abs_means.max()),
        z_means=tuple(float(z) for z in z_means),
    )


# ── Walk-forward ─────────────────────────────────────────────────────────


def walk_forward(
    rows: Sequence[TrainingRow],
    folds: int = 4,
    test_fraction: float = 0.15,
    min_train_fraction: float = 0.5,
    drift_warn_z: float = 0.5,
    config: TrainingConfig = TrainingConfig(),
) -> list[FoldResult]:
    """Expanding-window chronological validation.

    Each fold trains on every row before ``train_end`` and tests on the
    next ``test_size`` rows, then ``train_end`` advances by ``test_size``.
    Test windows therefore never overlap.  Rows must already be in
    timestamp order.  Too little data yields an empty list.
    """
    total = len(rows)
    if total == 0 or folds <= 0:
        return []
    test_size = max(MIN_TEST_ROWS, int(total * test_fraction))
    train_end = max(int(total * min_train_fraction), test_size)

    X = np.asarray([r.x for r in rows], dtype=float)
    y = np.asarray([r.y for r in rows], dtype=float)
    results: list[FoldResult] = []

    fold = 1
    while fold <= folds and train_end + test_size <= total:
        test_slice = slice(train_end, train_end + test_size)
        means, stds, train_xn = standardize(X[:train_end])
        weights, bias = train_logistic_regression(train_xn, y[:train_end], config)
        metrics = evaluate_model(
            standardize_with(X[test_slice], means, stds), y[test_slice], weights, bias
        )
        drift = drift_stats(X[test_slice], means, stds)
        results.append(
            FoldResult(
                fold=fold,
                train_size=train_end,
                test_size=test_size,
                train_end=train_end,
                accuracy=metrics.accuracy,
                log_loss=metrics.log_loss,
                base_rate=metrics.base_rate,
                drift_avg_abs_z=drift.avg_abs_z,
                drift_max_abs_z=drift.max_abs_z,
                drift_flagged=drift.avg_abs_z > drift_warn_z,
            )
        )
        train_end += test_size
        fold += 1

    return results


# ── Training function ────────────────────────────────────────────────────


def train_meta_model(
    rows: Sequence[TrainingRow],
    features: Sequence[str] = FEATURES,
    config: TrainingConfig = TrainingConfig(),
    threshold: float = DEFAULT_THRESHOLD,
    walk_forward_folds: int = 4,
    test_fraction: float = 0.15,
    min_train_fraction: float = 0.5,
    drift_warn_z: float = 0.5,
) -> tuple[MetaModel, TrainingReport]:
    """Fit the final model on all rows and report walk-forward results.

    Rows are sorted by timestamp first.  Raises ``ValueError`` when
    there are no rows.
    """
    if not rows:
        raise ValueError("No training rows")
    ordered = sorted(rows, key=lambda r: r.timestamp)
    if len(ordered) < SMALL_SAMPLE_WARNING:
        logger.warning("Only %d training rows; results may be unstable", len(ordered))

    folds = walk_forward(
        ordered,
        folds=walk_forward_folds,
        test_fraction=test_fraction,
        min_train_fraction=min_train_fraction,
        drift_warn_z=drift_warn_z,
        config=config,
    )

    X = np.asarray([r.x for r in ordered], dtype=float)
    y = np.asarray([r.y for r in ordered], dtype=float)
    means, stds, xn = standardize(X)
    weights, bias = train_logistic_regression(xn, y, config)
    metrics = evaluate_model(xn, y, weights, bias)

    model = model_from_arrays(features, weights, bias, means, stds, threshold)
    return model, TrainingReport(rows=len(ordered), metrics=metrics, folds=folds)


def log_report(report: TrainingReport) -> None:
    if not report.folds:
        logger.info("Walk-forward: skipped (not enough data for requested folds)")
    for f in report.folds:
        logger.info(
            "fold %d | train=%d test=%d | acc=%.1f%% | logloss=%.4f | baseRate=%.1f%% "
            "| driftAvgZ=%.2f | driftMaxZ=%.2f%s",
            f.fold, f.train_size, f.test_size, f.accuracy * 100, f.log_loss,
            f.base_rate * 100, f.drift_avg_abs_z, f.drift_max_abs_z,
            " DRIFT" if f.drift_flagged else "",
        )
    m = report.metrics
    logger.info(
        "Fit on %d rows | acc=%.1f%% | logloss=%.4f | baseRate=%.1f%%",
        report.rows, m.accuracy * 100, m.log_loss, m.base_rate * 100,
    )


async def collect_rows(
    signals: Sequence[Signal],
    max_groups: int = 10,
    min_signals_per_group: int = 20,
    max_hold_bars: int = 60,
    lookback_candles: int = 260,
    data_dir: Optional[Path] = DATA_DIR,
) -> list[TrainingRow]:
    """Fetch candles for the largest signal groups and build their rows."""
    groups = group_signals(signals, min_signals_per_group, max_groups)
    if not groups:
        raise ValueError(f"No group has at least {min_signals_per_group} signals")

    rows: list[TrainingRow] = []
    for group in groups:
        label = "/".join(group.key)
        candles = await fetch_group_candles(group, lookback_candles, max_hold_bars, data_dir)
        if len(candles) < lookback_candles:
            logger.info("%s skipped (only %d candles)", label, len(candles))
            continue
        added = build_training_rows(group.signals, candles, FEATURES, max_hold_bars)
        logger.info("%s | signals=%d candles=%d rows=%d", label, len(group.signals), len(candles), len(added))
        rows.extend(added)
    return rows


# ── CLI ──────────────────────────────────────────────────────────────────


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Train the signal meta-model")
    parser.add_argument("--in", dest="input", required=True, help="Exported signals JSON")
    parser.add_argument("--out", default="fsd-model.json")
    parser.add_argument("--max-groups", type=int, default=10)
    parser.add_argument("--min-signals-per-group", type=int, default=20)
    parser.add_argument("--max-hold-bars", type=int, default=60)
    parser.add_argument("--lookback-candles", type=int, default=260)
    parser.add_argument("--walk-forward-folds", type=int, default=4)
    parser.add_argument("--walk-forward-test-fraction", type=float, default=0.15)
    parser.add_argument("--walk-forward-min-train-fraction", type=float, default=0.5)
    parser.add_argument("--drift-warn-z", type=float, default=0.5)
    parser.add_argument("--data-dir", default=str(DATA_DIR))
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        loaded = load_signal_export(Path(args.input))
        if not loaded.signals:
            raise ValueError("No valid signals found in input")
        rows = asyncio.run(
            collect_rows(
                loaded.signals,
                max_groups=args.max_groups,
                min_signals_per_group=args.min_signals_per_group,
                max_hold_bars=args.max_hold_bars,
                lookback_candles=args.lookback_candles,
                data_dir=Path(args.data_dir),
            )
        )
        model, report = train_meta_model(
            rows,
            walk_forward_folds=args.walk_forward_folds,
            test_fraction=args.walk_forward_test_fraction,
            min_train_fraction=args.walk_forward_min_train_fraction,
            drift_warn_z=args.drift_warn_z,
        )
    except (OSError, ValueError) as exc:
        logger.error("Training failed: %s", exc)
        return 1

    log_report(report)
    out = Path(args.out)
    out.write_text(model.to_json(), encoding="utf-8")
    report_path = out.with_suffix(".report.json")
    report_path.write_text(_report_json(report), encoding="utf-8")
    logger.info("Saved model → %s (report → %s)", out, report_path)
    return 0


def _report_json(report: TrainingReport) -> str:
    return json.dumps(asdict(report), indent=2)


if __name__ == "__main__":
    raise SystemExit(main())
