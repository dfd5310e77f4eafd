"""Tests for signal exports, grouping and the Parquet candle cache."""

import json
from unittest.mock import AsyncMock

import pandas as pd
import pytest

from conftest import T0, STEP, make_candle
from signaldesk.market.models import Candle
from signaldesk.meta.data import (
    GroupKey,
    SignalGroup,
    cache_path,
    candle_window,
    candles_to_frame,
    fetch_group_candles,
    frame_to_candles,
    group_signals,
    load_from_parquet,
    load_signal_export,
    normalize_signal_row,
    normalize_signals,
    save_to_parquet,
)
from signaldesk.strategy.models import Signal


def _row(**overrides) -> dict:
    row = {
        "id": "a", "symbol": "BTCUSDT", "timeframe": "5m", "side": "long",
        "entry": 100, "stop": 99, "tp1": 102, "rr": 2, "score": 90,
        "timestamp": T0,
    }
    row.update(overrides)
    return row


def _signal(symbol: str = "BTCUSDT", tf: str = "5m", ts: int = T0, source: str = "futures") -> Signal:
    return Signal(
        id=f"{symbol}-{ts}", symbol=symbol, timeframe=tf, side="long",
        entry=100.0, stop=99.0, tp1=102.0, rr=2.0, score=90.0,
        reasons=(), timestamp=ts, zone_type="demand", data_source=source,
    )


class TestNormalize:
    def test_valid_row(self):
        signal, reason = normalize_signal_row(_row(dataSource="spot", zoneType="demand"))
        assert reason is None
        assert signal.data_source == "spot"
        assert signal.entry == 100.0

    def test_defaults_to_futures(self):
        signal, _ = normalize_signal_row(_row(dataSource="margin"))
        assert signal.data_source == "futures"

    @pytest.mark.parametrize(
        "row, fragment",
        [
            ("nope", "not an object"),
            (_row(symbol=""), "missing symbol"),
            (_row(timeframe="2m"), "unknown timeframe"),
            (_row(side="flat"), "invalid side"),
            (_row(entry="x", rr=None), "non-numeric entry, rr"),
            (_row(stop=100), "entry must be positive"),
            (_row(score=True), "non-numeric score"),
        ],
    )
    def test_skip_reasons(self, row, fragment):
        signal, reason = normalize_signal_row(row, 7)
        assert signal is None
        assert reason.startswith("row 7:")
        assert fragment in reason

    def test_normalize_signals_collects_skips(self):
        loaded = normalize_signals([_row(), _row(side="flat"), _row(id="b")])
        assert [s.id for s in loaded.signals] == ["a", "b"]
        assert len(loaded.skipped) == 1

    def test_load_export_accepts_state_file(self, tmp_path):
        path = tmp_path / "signals.json"
        path.write_text(json.dumps({"history": [_row()], "lastRun": 1}), encoding="utf-8")
        assert len(load_signal_export(path).signals) == 1

    def test_load_export_rejects_object(self, tmp_path):
        path = tmp_path / "signals.json"
        path.write_text(json.dumps({"rows": []}), encoding="utf-8")
        with pytest.raises(ValueError):
            load_signal_export(path)


class TestGrouping:
    def test_largest_groups_first(self):
        signals = (
            [_signal("BTCUSDT", ts=T0 + i) for i in range(3)]
            + [_signal("ETHUSDT", ts=T0 + i) for i in range(4)]
            + [_signal("BTCUSDT", ts=T0 + i, source="spot") for i in range(2)]
            + [_signal("SOLUSDT")]
        )
        groups = group_signals(signals, min_signals=2, max_groups=2)
        assert [g.key for g in groups] == [
            GroupKey("futures", "ETHUSDT", "5m"),
            GroupKey("futures", "BTCUSDT", "5m"),
        ]

    def test_candle_window(self):
        group = SignalGroup(GroupKey("futures", "BTCUSDT", "5m"), [_signal(ts=T0), _signal(ts=T0 + STEP)])
        assert candle_window(group, 10, 5) == (T0 - 10 * STEP, T0 + STEP + 10 * STEP)

    def test_cache_path(self, tmp_path):
        path = cache_path(GroupKey("spot", "BTCUSDT", "1H"), tmp_path)
        assert path == tmp_path / "spot" / "BTCUSDT" / "1H.parquet"


class TestFrames:
    def test_frame_dedupes_and_sorts(self):
        candles = [make_candle(1, 1, 2, 0.5, 1.5), make_candle(0, 1, 2, 0.5, 1.0)]
        df = pd.concat([candles_to_frame(candles), candles_to_frame(candles[:1])])
        out = frame_to_candles(df)
        assert [c.time for c in out] == [T0, T0 + STEP]
        assert isinstance(out[0], Candle)

    def test_empty_frame(self):
        assert frame_to_candles(candles_to_frame([])) == []

    def test_parquet_round_trip(self, tmp_path):
        candles = [make_candle(i, 100, 101, 99, 100.5) for i in range(3)]
        path = tmp_path / "nested" / "5m.parquet"
        save_to_parquet(candles_to_frame(candles), path)
        assert frame_to_candles(load_from_parquet(path)) == candles


class TestFetchGroupCandles:
    @pytest.mark.asyncio
    async def test_fetches_then_serves_cache(self, tmp_path):
        group = SignalGroup(GroupKey("futures", "BTCUSDT", "5m"), [_signal(ts=T0 + 100 * STEP)])

        def _range(symbol, timeframe, start, end):
            return [
                Candle(t, 100.0, 101.0, 99.0, 100.0, 5.0)
                for t in range(start, end + 1, STEP)
            ]

        client = AsyncMock()
        client.fetch_candles_range.side_effect = _range

        first = await fetch_group_candles(group, 20, 10, tmp_path, client=client)
        assert len(first) == 20 + 1 + 15
        assert cache_path(group.key, tmp_path).exists()
        assert client.fetch_candles_range.await_count == 1

        second = await fetch_group_candles(group, 20, 10, tmp_path, client=client)
        assert second == first
        assert client.fetch_candles_range.await_count == 1

    @pytest.mark.asyncio
    async def test_without_cache_dir(self, tmp_path):
        group = SignalGroup(GroupKey("futures", "BTCUSDT", "5m"), [_signal()])
        client = AsyncMock()
        client.fetch_candles_range.return_value = []
        assert await fetch_group_candles(group, 20, 10, None, client=client) == []
