"""Training data — signal exports, grouping, and candle caching.

Loads exported signal JSON, skips malformed rows with a reason, groups
signals by market, and fetches the candles each group needs, caching
them as Parquet for repeat runs.
"""

from __future__ import annotations

import json
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, NamedTuple, Optional

import pandas as pd

from signaldesk.market.binance_client import BinanceClient
from signaldesk.market.models import TIMEFRAME_SECONDS, Candle, timeframe_seconds
from signaldesk.strategy.models import SIDES, Signal

logger = logging.getLogger("signaldesk.meta.data")

DATA_DIR = Path("data") / "candles"

CANDLE_COLUMNS = ["time", "open", "high", "low", "close", "volume"]


# ── Signal exports ───────────────────────────────────────────────────────


@dataclass
class LoadedSignals:
    signals: list[Signal] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _finite(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def normalize_signal_row(row: Any, index: int = 0) -> tuple[Optional[Signal], Optional[str]]:
    """Convert one exported row into a Signal, or explain why it is skipped."""
    if not isinstance(row, dict):
        return None, f"row {index}: not an object"
    symbol, timeframe, side = row.get("symbol"), row.get("timeframe"), row.get("side")
    if not isinstance(symbol, str) or not symbol:
        return None, f"row {index}: missing symbol"
    if timeframe not in TIMEFRAME_SECONDS:
        return None, f"row {index}: unknown timeframe {timeframe!r}"
    if side not in SIDES:
        return None, f"row {index}: invalid side {side!r}"

    numbers = {k: _finite(row.get(k)) for k in ("entry", "stop", "tp1", "rr", "score", "timestamp")}
    missing = [k for k, v in numbers.items() if v is None]
    if missing:
        return None, f"row {index}: non-numeric {', '.join(missing)}"
    if numbers["entry"] <= 0 or numbers["entry"] == numbers["stop"]:
        return None, f"row {index}: entry must be positive and differ from stop"

    return (
        Signal(
            id=str(row.get("id") or f"row-{index}"),
            symbol=symbol,
            timeframe=timeframe,
            side=side,
            entry=numbers["entry"],
            stop=numbers["stop"],
            tp1=numbers["tp1"],
            rr=numbers["rr"],
            score=numbers["score"],
            reasons=tuple(row.get("reasons") or ()),
            timestamp=int(numbers["timestamp"]),
            zone_type=row.get("zoneType") or ("demand" if side == "long" else "supply"),
            gate_mode=row.get("gateMode"),
            data_source="spot" if row.get("dataSource") == "spot" else "futures",
        ),
        None,
    )


def normalize_signals(rows: Iterable[Any]) -> LoadedSignals:
    loaded = LoadedSignals()
    for i, row in enumerate(rows):
        signal, reason = normalize_signal_row(row, i)
        if signal is None:
            loaded.skipped.append(reason)
        else:
            loaded.signals.append(signal)
    return loaded


def load_signal_export(path: Path) -> LoadedSignals:
    """Read a JSON array of exported signals.

    Accepts either a bare array or a persisted state object with a
    ``history`` array.  Raises ``ValueError`` when neither is found.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict) and isinstance(data.get("history"), list):
        data = data["history"]
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON array of signals")
    loaded = normalize_signals(data)
    logger.info(
        "Loaded %d signals from %s (%d skipped)", len(loaded.signals), path, len(loaded.skipped)
    )
    return loaded


# ── Grouping ─────────────────────────────────────────────────────────────


class GroupKey(NamedTuple):
    data_source: str
    symbol: str
    timeframe: str


@dataclass
class SignalGroup:
    key: GroupKey
    signals: list[Signal]


def group_signals(
    signals: Iterable[Signal], min_signals: int = 20, max_groups: int = 10
) -> list[SignalGroup]:
    """Largest (source, symbol, timeframe) groups with at least *min_signals*."""
    buckets: dict[GroupKey, list[Signal]] = defaultdict(list)
    for s in signals:
        buckets[GroupKey(s.data_source or "futures", s.symbol, s.timeframe)].append(s)
    groups = [SignalGroup(k, v) for k, v in buckets.items() if len(v) >= min_signals]
    groups.sort(key=lambda g: len(g.signals), reverse=True)
    return groups[:max_groups]


# ── Candle frames / Parquet cache ────────────────────────────────────────


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    return pd.DataFrame(
        [(c.time, c.open, c.high, c.low, c.close, c.volume) for c in candles],
        columns=CANDLE_COLUMNS,
    )


def frame_to_candles(df: pd.DataFrame) -> list[Candle]:
    """Rebuild candles from a frame, sorted and de-duplicated on ``time``."""
    if df.empty:
        return []
    df = df.drop_duplicates("time", keep="last").sort_values("time")
    return [
        Candle(int(t), float(o), float(h), float(l), float(c), float(v))
        for t, o, h, l, c, v in df[CANDLE_COLUMNS].itertuples(index=False, name=None)
    ]


def save_to_parquet(df: pd.DataFrame, path: Path) -> None:
    """Save DataFrame to Parquet file, creating directories as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_parquet(path, engine="pyarrow", index=False)
    logger.info("Saved %d rows → %s", len(df), path)


def load_from_parquet(path: Path) -> pd.DataFrame:
    return pd.read_parquet(path, engine="pyarrow")


def cache_path(key: GroupKey, data_dir: Path = DATA_DIR) -> Path:
    return data_dir / key.data_source / key.symbol / f"{key.timeframe}.parquet"


def candle_window(group: SignalGroup, lookback_candles: int, max_hold_bars: int) -> tuple[int, int]:
    """Unix-second bounds covering warm-up before and the hold window after the signals."""
    step = timeframe_seconds(group.key.timeframe)
    timestamps = [s.timestamp for s in group.signals]
    return (
        min(timestamps) - lookback_candles * step,
        max(timestamps) + (max_hold_bars + 5) * step,
    )


async def fetch_group_candles(
    group: SignalGroup,
    lookback_candles: int = 260,
    max_hold_bars: int = 60,
    data_dir: Optional[Path] = DATA_DIR,
    client: Optional[BinanceClient] = None,
) -> list[Candle]:
    """Candles covering *group*, served from the Parquet cache when it spans the window."""
    start, end = candle_window(group, lookback_candles, max_hold_bars)
    path = cache_path(group.key, data_dir) if data_dir is not None else None

    if path is not None and path.exists():
        df = load_from_parquet(path)
        if not df.empty and df["time"].min() <= start and df["time"].max() >= end - timeframe_seconds(group.key.timeframe):
            window = df[(df["time"] >= start) & (df["time"] <= end)]
            logger.info("%s: %d cached candles", "/".join(group.key), len(window))
            return frame_to_candles(window)

    client = client or BinanceClient(group.key.data_source)
    candles = await client.fetch_candles_range(group.key.symbol, group.key.timeframe, start, end)
    if path is not None and candles:
        save_to_parquet(candles_to_frame(candles), path)
    return candles
