"""Tests for meta-model validation, inference and loading."""

import json
import math
import os

import pytest

from signaldesk.meta.features import FEATURES, Diagnostics, feature_vector
from signaldesk.meta.filter import (
    MODEL_VERSION,
    MetaModel,
    MetaModelManager,
    MetaPrediction,
    parse_meta_model,
    passes_filter,
    predict,
    validate_meta_model,
)
from signaldesk.strategy.models import Signal

T0 = 1_700_000_000


def _signal(score: float = 90.0, rr: float = 2.0) -> Signal:
    return Signal(
        id="s1", symbol="BTCUSDT", timeframe="5m", side="long",
        entry=100.0, stop=99.0, tp1=100.0 + rr, rr=rr, score=score,
        reasons=(), timestamp=T0, zone_type="demand",
    )


def _model_dict(**overrides) -> dict:
    data = {
        "version": MODEL_VERSION,
        "features": ["score", "rr"],
        "weights": [0.1, 0.0],
        "bias": 0.0,
        "means": [0.0, 0.0],
        "stds": [1.0, 1.0],
    }
    data.update(overrides)
    return data


class TestValidation:
    def test_valid(self):
        result = validate_meta_model(_model_dict(threshold=0.6))
        assert result.ok is True
        assert result.model.features == ("score", "rr")
        assert result.model.effective_threshold == pytest.approx(0.6)

    @pytest.mark.parametrize(
        "data, error",
        [
            ([], "Invalid JSON object."),
            (_model_dict(version="v0"), "Unsupported model version."),
            (_model_dict(features=[1, 2]), "features must be string[]."),
            (_model_dict(weights=[0.1, "x"]), "weights must be number[]."),
            (_model_dict(bias=None), "bias must be a number."),
            (_model_dict(weights=[0.1]), "weights length must match features length."),
            (_model_dict(means=[0.0]), "means must be number[] with same length as features."),
            (_model_dict(stds=[1.0, True]), "stds must be number[] with same length as features."),
            (_model_dict(threshold="high"), "threshold must be a number."),
        ],
    )
    def test_errors(self, data, error):
        result = validate_meta_model(data)
        assert result.ok is False
        assert result.error == error

    def test_parse_bad_json(self):
        result = parse_meta_model("{not json")
        assert result.ok is False
        assert result.error.startswith("Failed to parse JSON")

    def test_round_trip_json(self):
        model = validate_meta_model(_model_dict()).model
        assert parse_meta_model(model.to_json()).model == model


class TestPredict:
    def test_zero_weights_fail_default_threshold(self):
        model = MetaModel(features=("score", "rr"), weights=(0.0, 0.0), bias=0.0)
        prediction = predict(model, _signal())
        assert prediction.p_tp1 == pytest.approx(0.5)
        assert prediction.ev_r == pytest.approx(0.5)
        assert passes_filter(model, prediction) is False

    def test_strong_score_passes(self):
        model = validate_meta_model(_model_dict()).model
        prediction = predict(model, _signal(score=90.0))
        assert prediction.p_tp1 > 0.99
        assert passes_filter(model, prediction) is True

    def test_negative_ev_fails(self):
        model = MetaModel(features=("score",), weights=(0.0,), bias=0.5, threshold=0.5)
        prediction = predict(model, _signal(rr=0.5))
        assert prediction.ev_r < 0
        assert passes_filter(model, prediction) is False

    def test_missing_feature(self):
        model = MetaModel(features=("adx",), weights=(1.0,), bias=0.0)
        assert predict(model, _signal()) is None
        assert predict(model, _signal(), Diagnostics(adx=25.0)) is not None

    def test_zero_std_treated_as_one(self):
        model = MetaModel(
            features=("score",), weights=(1.0,), bias=0.0, means=(89.0,), stds=(0.0,)
        )
        assert predict(model, _signal(score=90.0)).p_tp1 == pytest.approx(1 / (1 + math.exp(-1)))

    def test_passes_filter_boundary(self):
        model = MetaModel(features=(), weights=(), bias=0.0, threshold=0.6)
        assert passes_filter(model, MetaPrediction(p_tp1=0.6, ev_r=0.1)) is True
        assert passes_filter(model, MetaPrediction(p_tp1=0.6, ev_r=0.0)) is False


class TestFeatureVector:
    def test_full_vector_order(self):
        diag = Diagnostics(atr_pct=0.3, adx=25.0, bb=1.5, ema_slope=0.2, trend="down")
        x = feature_vector(FEATURES, _signal(), diag)
        assert x.tolist() == pytest.approx([90.0, 2.0, 1.0, 0.3, 25.0, 1.5, 0.2, -1.0])

    def test_unknown_feature(self):
        assert feature_vector(("volume",), _signal(), None) is None

    def test_diagnostics_dict_round_trip(self):
        diag = Diagnostics(atr_pct=0.3, adx=math.nan, trend="up", reasons=["ADX low"])
        data = diag.to_dict()
        assert data["adx"] is None
        restored = Diagnostics.from_dict(data)
        assert restored.atr_pct == pytest.approx(0.3)
        assert math.isnan(restored.adx)
        assert restored.reasons == ["ADX low"]


class TestMetaModelManager:
    def test_no_source(self):
        assert MetaModelManager().get_model() is None

    def test_inline_json_wins(self, tmp_path):
        path = tmp_path / "model.json"
        path.write_text(json.dumps(_model_dict(bias=5.0)), encoding="utf-8")
        manager = MetaModelManager(str(path), inline_json=json.dumps(_model_dict(bias=1.0)))
        assert manager.get_model().bias == pytest.approx(1.0)

    def test_file_reloads_on_mtime_change(self, tmp_path):
        path = tmp_path / "model.json"
        path.write_text(json.dumps(_model_dict(bias=1.0)), encoding="utf-8")
        os.utime(path, (T0, T0))
        manager = MetaModelManager(str(path))
        assert manager.get_model().bias == pytest.approx(1.0)

        path.write_text(json.dumps(_model_dict(bias=2.0)), encoding="utf-8")
        os.utime(path, (T0, T0))
        assert manager.get_model().bias == pytest.approx(1.0)

        os.utime(path, (T0 + 60, T0 + 60))
        assert manager.get_model().bias == pytest.approx(2.0)

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "model.json"
        path.write_text(json.dumps(_model_dict(version="old")), encoding="utf-8")
        assert MetaModelManager(str(path)).get_model() is None

    def test_missing_file(self, tmp_path):
        assert MetaModelManager(str(tmp_path / "absent.json")).get_model() is None

    def test_undecodable_file(self, tmp_path):
        path = tmp_path / "model.json"
        path.write_bytes(b"\xff\xfe\x00garbage")
        assert MetaModelManager(str(path)).get_model() is None
