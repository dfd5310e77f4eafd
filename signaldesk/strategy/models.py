"""Strategy data models — zones, gate thresholds, settings and signals."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Optional


SIDES = ("long", "short")
ZONE_TYPES = ("supply", "demand")
OUTCOMES = ("tp1", "stop", "timeout", "open")
GATE_MODES = ("default", "aggressive", "conservative")
DATA_SOURCES = ("futures", "spot")


@dataclass
class Zone:
    """A supply or demand price band anchored at a pivot.

    Zones are rebuilt from the candle window on every generator call, so the
    touch/mitigation flags are only ever updated during that replay.
    """

    id: str
    zone_type: str  # "supply" or "demand"
    top: float
    bottom: float
    start_time: int
    pivot_index: int
    fresh: bool = True
    mitigated: bool = False
    last_touch: Optional[int] = None
    end_time: Optional[int] = None

    def contains(self, price: float) -> bool:
        return self.bottom <= price <= self.top


@dataclass(frozen=True)
class QualityGateConfig:
    """Threshold set governing signal admission."""

    max_stop_pct: float
    min_rr: float
    atr_pct_min: float
    atr_pct_max: float
    require_fresh_zone: bool
    cooldown_bars: int
    score_min: float
    stop_atr_mult: float

    def __post_init__(self) -> None:
        if self.atr_pct_min > self.atr_pct_max:
            raise ValueError(
                f"atr_pct_min ({self.atr_pct_min}) must not exceed "
                f"atr_pct_max ({self.atr_pct_max})"
            )

    @property
    def atr_pct_mid(self) -> float:
        return (self.atr_pct_min + self.atr_pct_max) / 2


@dataclass(frozen=True)
class StrategySettings:
    """Indicator periods and generator switches."""

    atr_period: int = 14
    ema_period: int = 200
    adx_period: int = 14
    bb_period: int = 20
    zone_atr_mult: float = 1.0
    pivot_left: int = 3
    pivot_right: int = 3
    donchian_period: int = 25
    min_bandwidth: float = 0.06
    enable_squeeze: bool = True
    htf_timeframes: tuple[str, ...] = ("1H", "4H")
    range_lookback: int = 120
    range_low: float = 0.2
    range_high: float = 0.8


# ── Gate presets ─────────────────────────────────────────────────────────

DEFAULT_GATE = QualityGateConfig(
    max_stop_pct=0.8,
    min_rr=1.4,
    atr_pct_min=0.05,
    atr_pct_max=1.6,
    require_fresh_zone=False,
    cooldown_bars=4,
    score_min=80,
    stop_atr_mult=1.1,
)

AGGRESSIVE_GATE = replace(
    DEFAULT_GATE,
    max_stop_pct=1.0,
    min_rr=1.2,
    atr_pct_min=0.04,
    atr_pct_max=2.0,
    cooldown_bars=2,
    score_min=70,
)

CONSERVATIVE_GATE = replace(
    DEFAULT_GATE,
    max_stop_pct=0.5,
    min_rr=2.0,
    atr_pct_min=0.08,
    atr_pct_max=1.0,
    require_fresh_zone=True,
    cooldown_bars=10,
    score_min=90,
)

GATE_PRESETS: dict[str, QualityGateConfig] = {
    "default": DEFAULT_GATE,
    "aggressive": AGGRESSIVE_GATE,
    "conservative": CONSERVATIVE_GATE,
}

DEFAULT_STRATEGY = StrategySettings()


def gate_for_mode(mode: str) -> QualityGateConfig:
    """Return the gate preset for *mode*.

    Raises ``ValueError`` for an unknown mode.
    """
    try:
        return GATE_PRESETS[mode]
    except KeyError:
        raise ValueError(
            f"Unknown gate mode '{mode}'. Available: {', '.join(GATE_PRESETS)}"
        ) from None


# ── Signals ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Signal:
    """An emitted, timestamped trade idea.

    Signals are immutable; resolving one produces a new value through
    :meth:`with_outcome`.
    """

    id: str
    symbol: str
    timeframe: str
    side: str  # "long" or "short"
    entry: float
    stop: float
    tp1: float
    rr: float
    score: float
    reasons: tuple[str, ...]
    timestamp: int
    zone_type: str
    gate_mode: Optional[str] = None
    data_source: Optional[str] = None
    outcome: Optional[str] = None
    outcome_at: Optional[int] = None
    bars_held: Optional[int] = None
    outcome_r: Optional[float] = None
    probability: Optional[float] = None
    ev_r: Optional[float] = None
    meta_pass: Optional[bool] = None
    diagnostics: Optional[dict[str, Any]] = field(default=None, compare=False)

    @property
    def risk(self) -> float:
        return abs(self.entry - self.stop)

    @property
    def stop_pct(self) -> float:
        return self.risk / self.entry * 100 if self.entry else math.nan

    @property
    def resolved(self) -> bool:
        return self.outcome is not None and self.outcome != "open"

    def with_outcome(
        self,
        outcome: str,
        outcome_at: Optional[int],
        bars_held: Optional[int],
        r: Optional[float] = None,
    ) -> "Signal":
        return replace(
            self,
            outcome=outcome,
            outcome_at=outcome_at,
            bars_held=bars_held,
            outcome_r=r,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase wire format, dropping unset fields."""
        data: dict[str, Any] = {
            "id": self.id,
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "side": self.side,
            "entry": self.entry,
            "stop": self.stop,
            "tp1": self.tp1,
            "rr": self.rr,
            "score": self.score,
            "reasons": list(self.reasons),
            "timestamp": self.timestamp,
            "zoneType": self.zone_type,
        }
        optional = {
            "gateMode": self.gate_mode,
            "dataSource": self.data_source,
            "outcome": self.outcome,
            "outcomeAt": self.outcome_at,
            "barsHeld": self.bars_held,
            "outcomeR": self.outcome_r,
            "probability": self.probability,
            "evR": self.ev_r,
            "metaPass": self.meta_pass,
            "diagnostics": self.diagnostics,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Signal":
        """Build a Signal from its wire format.

        Raises ``KeyError``/``ValueError``/``TypeError`` on malformed input.
        """
        side = data["side"]
        if side not in SIDES:
            raise ValueError(f"Invalid side '{side}'")
        entry = float(data["entry"])
        stop = float(data["stop"])
        if entry == stop:
            raise ValueError("entry must differ from stop")
        outcome = data.get("outcome")
        if outcome is not None and outcome not in OUTCOMES:
            raise ValueError(f"Invalid outcome '{outcome}'")
        reasons = data.get("reasons") or []
        if not isinstance(reasons, list):
            raise TypeError("reasons must be a list")
        return cls(
            id=str(data["id"]),
            symbol=str(data["symbol"]),
            timeframe=str(data["timeframe"]),
            side=side,
            entry=entry,
            stop=stop,
            tp1=float(data["tp1"]),
            rr=float(data["rr"]),
            score=float(data.get("score", 0)),
            reasons=tuple(str(r) for r in reasons),
            timestamp=int(data["timestamp"]),
            zone_type=data.get("zoneType") or ("demand" if side == "long" else "supply"),
            gate_mode=data.get("gateMode"),
            data_source=data.get("dataSource"),
            outcome=outcome,
            outcome_at=_opt_int(data.get("outcomeAt")),
            bars_held=_opt_int(data.get("barsHeld")),
            outcome_r=_opt_float(data.get("outcomeR")),
            probability=_opt_float(data.get("probability")),
            ev_r=_opt_float(data.get("evR")),
            meta_pass=data.get("metaPass"),
            diagnostics=data.get("diagnostics"),
        )


def _opt_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def _opt_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)
