"""Meta-model filter — logistic-regression scoring of live signals.

Provides:
- ``MetaModel`` / ``validate_meta_model()``: structural validation of the
  JSON interchange format into an immutable model.
- ``predict()`` / ``passes_filter()``: probability of reaching TP1 and
  expected value in R.
- ``MetaModelManager``: loads a model from inline JSON or a file, cached
  until the file's modification time changes.
"""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

import numpy as np

from signaldesk.meta.features import Diagnostics, feature_vector
from signaldesk.strategy.models import Signal

logger = logging.getLogger("signaldesk.meta.filter")

MODEL_VERSION = "fsd-meta-v1"
DEFAULT_THRESHOLD = 0.55


@dataclass(frozen=True)
class MetaModel:
    """Immutable logistic-regression model."""

    features: tuple[str, ...]
    weights: tuple[float, ...]
    bias: float
    means: Optional[tuple[float, ...]] = None
    stds: Optional[tuple[float, ...]] = None
    threshold: Optional[float] = None
    version: str = MODEL_VERSION

    @property
    def effective_threshold(self) -> float:
        return self.threshold if self.threshold is not None else DEFAULT_THRESHOLD

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "features": list(self.features),
            "weights": list(self.weights),
            "bias": self.bias,
        }
        if self.means is not None:
            data["means"] = list(self.means)
        if self.stds is not None:
            data["stds"] = list(self.stds)
        if self.threshold is not None:
            data["threshold"] = self.threshold
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


@dataclass(frozen=True)
class ModelValidation:
    """Tagged validation result: ``model`` when ``ok``, else ``error``."""

    ok: bool
    model: Optional[MetaModel] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class MetaPrediction:
    p_tp1: float
    ev_r: float


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _numbers(value: Any) -> bool:
    return isinstance(value, list) and all(_is_number(v) for v in value)


def _fail(error: str) -> ModelValidation:
    return ModelValidation(ok=False, error=error)


def validate_meta_model(data: Any) -> ModelValidation:
    """Validate an untrusted, decoded JSON value as a meta-model."""
    if not isinstance(data, dict):
        return _fail("Invalid JSON object.")
    if data.get("version") != MODEL_VERSION:
        return _fail("Unsupported model version.")
    features = data.get("features")
    if not isinstance(features, list) or not all(isinstance(f, str) for f in features):
        return _fail("features must be string[].")
    weights = data.get("weights")
    if not _numbers(weights):
        return _fail("weights must be number[].")
    if not _is_number(data.get("bias")):
        return _fail("bias must be a number.")
    if len(weights) != len(features):
        return _fail("weights length must match features length.")

    means = data.get("means")
    if means is not None and not (_numbers(means) and len(means) == len(features)):
        return _fail("means must be number[] with same length as features.")
    stds = data.get("stds")
    if stds is not None and not (_numbers(stds) and len(stds) == len(features)):
        return _fail("stds must be number[] with same length as features.")
    threshold = data.get("threshold")
    if threshold is not None and not _is_number(threshold):
        return _fail("threshold must be a number.")

    return ModelValidation(
        ok=True,
        model=MetaModel(
            features=tuple(features),
            weights=tuple(float(w) for w in weights),
            bias=float(data["bias"]),
            means=tuple(float(m) for m in means) if means is not None else None,
            stds=tuple(float(s) for s in stds) if stds is not None else None,
            threshold=float(threshold) if threshold is not None else None,
        ),
    )


def parse_meta_model(text: str) -> ModelValidation:
    """Decode *text* as JSON and validate it."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        return _fail(f"Failed to parse JSON: {exc}")
    return validate_meta_model(data)


# ── Inference ────────────────────────────────────────────────────────────


def _sigmoid(z: float) -> float:
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    ez = math.exp(z)
    return ez / (1.0 + ez)


def _normalize(x: np.ndarray, model: MetaModel) -> np.ndarray:
    means = np.asarray(model.means, dtype=float) if model.means is not None else np.zeros_like(x)
    stds = np.asarray(model.stds, dtype=float) if model.stds is not None else np.ones_like(x)
    stds = np.where(stds == 0, 1.0, stds)
    return (x - means) / stds


def predict(
    model: MetaModel, signal: Signal, diagnostics: Optional[Diagnostics] = None
) -> Optional[MetaPrediction]:
    """Score *signal*; ``None`` when its feature vector is incomplete."""
    x = feature_vector(model.features, signal, diagnostics)
    if x is None:
        return None
    z = model.bias + float(np.dot(np.asarray(model.weights), _normalize(x, model)))
    p = _sigmoid(z)
    rr = signal.rr if math.isfinite(signal.rr) else 0.0
    return MetaPrediction(p_tp1=p, ev_r=p * rr - (1 - p))


def passes_filter(model: MetaModel, prediction: MetaPrediction) -> bool:
    """Probability at or above the model threshold and positive EV."""
    return prediction.p_tp1 >= model.effective_threshold and prediction.ev_r > 0


# ── Loading ──────────────────────────────────────────────────────────────


class MetaModelManager:
    """Supplies the current model to the worker.

    Inline JSON takes precedence over *path*.  A file-backed model is
    re-read only when its modification time changes; an unreadable or
    invalid model yields ``None`` with a logged warning.
    """

    def __init__(
        self, path: Optional[str] = None, inline_json: Optional[str] = None
    ) -> None:
        self._path = Path(path) if path else None
        self._inline_json = inline_json
        self._cached: Optional[MetaModel] = None
        self._mtime: Optional[float] = None
        self._inline_parsed = False

    def get_model(self) -> Optional[MetaModel]:
        if self._inline_json:
            if not self._inline_parsed:
                self._cached = self._parse(self._inline_json, "inline")
                self._inline_parsed = True
            return self._cached
        if self._path is None:
            return None

        try:
            mtime = os.stat(self._path).st_mtime
            if self._mtime != mtime:
                text = self._path.read_text(encoding="utf-8")
                self._cached = self._parse(text, str(self._path))
                self._mtime = mtime
        except (OSError, ValueError) as exc:
            logger.warning("Unable to load meta-model from %s: %s", self._path, exc)
            self._cached = None
            self._mtime = None
        return self._cached

    @staticmethod
    def _parse(text: str, source: str) -> Optional[MetaModel]:
        result = parse_meta_model(text)
        if not result.ok:
            logger.warning("Invalid meta-model (%s): %s", source, result.error)
            return None
        logger.info(
            "Meta-model loaded from %s (%d features, threshold=%.2f)",
            source,
            len(result.model.features),
            result.model.effective_threshold,
        )
        return result.model


def model_from_arrays(
    features: Sequence[str],
    weights: np.ndarray,
    bias: float,
    means: np.ndarray,
    stds: np.ndarray,
    threshold: float = DEFAULT_THRESHOLD,
) -> MetaModel:
    return MetaModel(
        features=tuple(features),
        weights=tuple(float(w) for w in weights),
        bias=float(bias),
        means=tuple(float(m) for m in means),
        stds=tuple(float(s) for s in stds),
        threshold=threshold,
    )
