"""Tests for meta-model training: labelling, logistic regression and walk-forward."""

import json
from unittest.mock import AsyncMock, patch

import numpy as np
import pytest

from conftest import T0, STEP, rising_candles
from signaldesk.meta.data import SignalGroup
from signaldesk.meta.features import FEATURES
from signaldesk.meta.filter import parse_meta_model, validate_meta_model
from signaldesk.meta.train import (
    TrainingConfig,
    TrainingRow,
    build_training_rows,
    collect_rows,
    drift_stats,
    label_signal,
    main,
    sigmoid,
    standardize,
    train_logistic_regression,
    train_meta_model,
    walk_forward,
)
from signaldesk.strategy.models import Signal

FAST = TrainingConfig(iterations=50)


def _signal(ts: int, entry: float = 100.0, **overrides) -> Signal:
    defaults = dict(
        id=f"s{ts}", symbol="BTCUSDT", timeframe="5m", side="long",
        entry=entry, stop=entry - 1, tp1=entry + 2, rr=2.0, score=90.0,
        reasons=(), timestamp=ts, zone_type="demand",
    )
    defaults.update(overrides)
    return Signal(**defaults)


def _separable_rows(n: int, dims: int = 1) -> list[TrainingRow]:
    rows = []
    for i in range(n):
        y = i % 2
        value = 1.0 if y else -1.0
        rows.append(TrainingRow(tuple([value] * dims), y, T0 + i * STEP))
    return rows


# ── Labelling ────────────────────────────────────────────────────────────


class TestLabelSignal:
    def test_tp_reached(self):
        candles = rising_candles(60)
        assert label_signal(_signal(candles[40].time, 140.0), candles, 40) == 1

    def test_stop_first(self):
        candles = rising_candles(60)
        short = _signal(candles[40].time, 140.0, side="short", stop=141.0, tp1=138.0)
        assert label_signal(short, candles, 40) == 0

    def test_unresolved_is_zero(self):
        candles = rising_candles(60)
        far = _signal(candles[40].time, 140.0, stop=100.0, tp1=500.0)
        assert label_signal(far, candles, 40, max_hold_bars=5) == 0

    def test_invalid_prices(self):
        candles = rising_candles(10)
        assert label_signal(_signal(T0, 100.0, stop=100.0), candles, 0) is None


class TestBuildTrainingRows:
    def test_drops_past_end_and_incomplete_features(self):
        candles = rising_candles(60)
        signals = [
            _signal(candles[40].time, 140.0),
            _signal(candles[5].time, 105.0),
            _signal(candles[-1].time + 10 * STEP, 170.0),
        ]
        rows = build_training_rows(signals, candles, FEATURES)
        assert len(rows) == 1
        assert rows[0].y == 1
        assert rows[0].timestamp == candles[40].time
        assert len(rows[0].x) == len(FEATURES)

    def test_no_candles(self):
        assert build_training_rows([_signal(T0)], []) == []


# ── Math ─────────────────────────────────────────────────────────────────


class TestMath:
    def test_standardize(self):
        means, stds, xn = standardize(np.array([[1.0, 2.0], [3.0, 2.0]]))
        assert means.tolist() == [2.0, 2.0]
        assert stds.tolist() == [1.0, 1.0]
        assert xn.tolist() == [[-1.0, 0.0], [1.0, 0.0]]

    def test_sigmoid_is_clamped(self):
        assert sigmoid(np.array(1000.0)) == pytest.approx(sigmoid(np.array(20.0)))
        assert sigmoid(np.array(0.0)) == pytest.approx(0.5)

    def test_separable_data(self):
        rows = _separable_rows(40)
        X = np.array([r.x for r in rows])
        y = np.array([r.y for r in rows])
        weights, bias = train_logistic_regression(X, y, TrainingConfig(iterations=200))
        assert weights[0] > 0
        assert abs(bias) < 1e-6

    def test_empty_input_raises(self):
        with pytest.raises(ValueError):
            train_logistic_regression(np.zeros((0, 2)), np.zeros(0))

    def test_drift_stats(self):
        drift = drift_stats(np.array([[2.0, 0.0], [2.0, 0.0]]), np.zeros(2), np.ones(2))
        assert drift.z_means == (2.0, 0.0)
        assert drift.avg_abs_z == pytest.approx(1.0)
        assert drift.max_abs_z == pytest.approx(2.0)


# ── Walk-forward / training ──────────────────────────────────────────────


class TestWalkForward:
    def test_expanding_folds(self):
        folds = walk_forward(_separable_rows(400), folds=4, config=FAST)
        assert [f.train_size for f in folds] == [200, 260, 320]
        assert all(f.test_size == 60 for f in folds)
        assert all(f.accuracy == pytest.approx(1.0) for f in folds)
        assert not any(f.drift_flagged for f in folds)

    def test_fold_limit(self):
        assert len(walk_forward(_separable_rows(400), folds=2, config=FAST)) == 2

    def test_too_little_data(self):
        assert walk_forward(_separable_rows(80), config=FAST) == []
        assert walk_forward([], config=FAST) == []


class TestTrainMetaModel:
    def test_model_validates(self):
        rows = list(reversed(_separable_rows(120, dims=2)))
        model, report = train_meta_model(rows, features=("score", "rr"), config=FAST)
        assert validate_meta_model(model.to_dict()).ok is True
        assert report.rows == 120
        assert report.metrics.accuracy == pytest.approx(1.0)
        assert report.metrics.base_rate == pytest.approx(0.5)
        assert model.threshold == pytest.approx(0.55)

    def test_empty_rows(self):
        with pytest.raises(ValueError):
            train_meta_model([])


# ── Collection / CLI ─────────────────────────────────────────────────────


class TestCollectRows:
    @pytest.mark.asyncio
    async def test_no_groups(self):
        with pytest.raises(ValueError, match="No group"):
            await collect_rows([_signal(T0)], min_signals_per_group=2)

    @pytest.mark.asyncio
    async def test_short_groups_skipped(self):
        signals = [_signal(T0 + i * STEP) for i in range(3)]
        fetch = AsyncMock(return_value=rising_candles(10))
        with patch("signaldesk.meta.train.fetch_group_candles", fetch):
            rows = await collect_rows(signals, min_signals_per_group=3, lookback_candles=50)
        assert rows == []
        group = fetch.await_args.args[0]
        assert isinstance(group, SignalGroup)
        assert len(group.signals) == 3


class TestMain:
    def test_writes_model_and_report(self, tmp_path):
        source = tmp_path / "signals.json"
        source.write_text(json.dumps([_signal(T0).to_dict()]), encoding="utf-8")
        out = tmp_path / "model.json"
        rows = _separable_rows(120, dims=len(FEATURES))

        with patch("signaldesk.meta.train.collect_rows", AsyncMock(return_value=rows)):
            code = main(["--in", str(source), "--out", str(out), "--walk-forward-folds", "1"])

        assert code == 0
        assert parse_meta_model(out.read_text(encoding="utf-8")).ok is True
        report = json.loads((tmp_path / "model.report.json").read_text(encoding="utf-8"))
        assert report["rows"] == 120
        assert len(report["folds"]) == 1

    def test_missing_input_fails(self, tmp_path):
        assert main(["--in", str(tmp_path / "absent.json")]) == 1

    def test_empty_export_fails(self, tmp_path):
        source = tmp_path / "signals.json"
        source.write_text(json.dumps([{"symbol": "BTCUSDT"}]), encoding="utf-8")
        assert main(["--in", str(source)]) == 1
