"""SignalDesk — application configuration.

Loads .env variables into a typed config object.
Validates enumerated variables on startup; malformed numbers fall back
to their defaults.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from signaldesk.market.models import TIMEFRAME_SECONDS
from signaldesk.strategy.models import DATA_SOURCES, GATE_MODES

logger = logging.getLogger("signaldesk.config")

DEFAULT_SYMBOLS = ("BTCUSDT", "ETHUSDT", "SOLUSDT", "XRPUSDT", "ADAUSDT", "TAOUSDT")
DEFAULT_TIMEFRAMES = ("5m", "15m", "1H", "4H")


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    symbols: tuple[str, ...] = DEFAULT_SYMBOLS
    timeframes: tuple[str, ...] = DEFAULT_TIMEFRAMES
    data_source: str = "futures"  # "futures" or "spot"
    gate_mode: str = "default"
    poll_seconds: int = 60
    history_cap: int = 2000
    signal_store_path: str = "data/signals.json"
    webhook_url: Optional[str] = None
    meta_model_path: Optional[str] = None
    meta_model_json: Optional[str] = None
    trend_mode: bool = True
    dynamic_gate: bool = True
    auto_mute: bool = True
    max_hold_bars: int = 60
    ohlcv_limit: int = 2000
    fee_bps: float = 2.0
    slippage_bps: float = 1.0
    log_level: str = "INFO"
    api_port: int = 4000

    def to_dict(self) -> dict:
        """Configuration echo for the status endpoint (no secrets)."""
        return {
            "symbols": list(self.symbols),
            "timeframes": list(self.timeframes),
            "dataSource": self.data_source,
            "gateMode": self.gate_mode,
            "pollSeconds": self.poll_seconds,
            "historyCap": self.history_cap,
            "trendMode": self.trend_mode,
            "dynamicGate": self.dynamic_gate,
            "autoMute": self.auto_mute,
            "maxHoldBars": self.max_hold_bars,
            "ohlcvLimit": self.ohlcv_limit,
            "feeBps": self.fee_bps,
            "slippageBps": self.slippage_bps,
            "webhookConfigured": bool(self.webhook_url),
            "metaModelConfigured": bool(self.meta_model_path or self.meta_model_json),
        }


def _csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name, "")
    items = tuple(part.strip() for part in raw.split(",") if part.strip())
    return items or default


def _int(name: str, default: int, minimum: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(float(raw))
    except (ValueError, OverflowError):
        logger.warning("%s=%r is not a number; using %d", name, raw, default)
        return default
    return max(minimum, value)


def _float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number; using %s", name, raw, default)
        return default


def _bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = os.environ.get(name, "").strip() or default
    if value not in choices:
        raise ValueError(
            f"Invalid {name} '{value}'. Expected one of: {', '.join(choices)}"
        )
    return value


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` naming the variable when ``DATA_SOURCE``,
    ``GATE_MODE`` or a timeframe in ``TIMEFRAMES`` is not recognized.
    """
    load_dotenv(dotenv_path=env_path)

    timeframes = _csv("TIMEFRAMES", DEFAULT_TIMEFRAMES)
    unknown = [tf for tf in timeframes if tf not in TIMEFRAME_SECONDS]
    if unknown:
        raise ValueError(f"Invalid TIMEFRAMES entries: {', '.join(unknown)}")

    return Config(
        symbols=tuple(s.upper() for s in _csv("SYMBOLS", DEFAULT_SYMBOLS)),
        timeframes=timeframes,
        data_source=_choice("DATA_SOURCE", "futures", DATA_SOURCES),
        gate_mode=_choice("GATE_MODE", "default", GATE_MODES),
        poll_seconds=_int("POLL_SECONDS", 60, minimum=5),
        history_cap=_int("HISTORY_CAP", 2000, minimum=100),
        signal_store_path=os.environ.get("SIGNAL_STORE_PATH", "data/signals.json"),
        webhook_url=os.environ.get("WEBHOOK_URL") or None,
        meta_model_path=os.environ.get("META_MODEL_PATH") or None,
        meta_model_json=os.environ.get("META_MODEL_JSON") or None,
        trend_mode=_bool("TREND_MODE", True),
        dynamic_gate=_bool("DYNAMIC_GATE", True),
        auto_mute=_bool("AUTO_MUTE", True),
        max_hold_bars=_int("MAX_HOLD_BARS", 60, minimum=10),
        ohlcv_limit=_int("OHLCV_LIMIT", 2000, minimum=400),
        fee_bps=_float("FEE_BPS", 2.0),
        slippage_bps=_float("SLIPPAGE_BPS", 1.0),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_port=_int("API_PORT", 4000, minimum=1),
    )
