"""Tests for the bounded signal history."""

import pytest

from signaldesk.strategy.history import SignalHistory
from signaldesk.strategy.models import Signal

T0 = 1_700_000_000


def _signal(id: str, ts: int, side: str = "long", symbol: str = "BTCUSDT", tf: str = "5m") -> Signal:
    return Signal(
        id=id, symbol=symbol, timeframe=tf, side=side,
        entry=100.0, stop=99.0 if side == "long" else 101.0,
        tp1=102.0 if side == "long" else 98.0, rr=2.0, score=90.0,
        reasons=(), timestamp=ts, zone_type="demand" if side == "long" else "supply",
    )


class TestSignalHistory:
    def test_cap_evicts_oldest(self):
        history = SignalHistory(cap=3)
        for i in range(5):
            history.add(_signal(f"s{i}", T0 + i * 300))
        assert len(history) == 3
        assert [s.id for s in history] == ["s2", "s3", "s4"]
        assert [s.id for s in history.for_stream("BTCUSDT", "5m")] == ["s2", "s3", "s4"]

    def test_latest_by_side(self):
        history = SignalHistory([
            _signal("a", T0, "long"),
            _signal("b", T0 + 300, "short"),
            _signal("c", T0 + 600, "long", symbol="ETHUSDT"),
        ])
        assert history.latest("BTCUSDT", "5m").id == "b"
        assert history.latest("BTCUSDT", "5m", "long").id == "a"
        assert history.latest("BTCUSDT", "15m") is None

    def test_has_within_is_strict(self):
        history = SignalHistory([_signal("a", T0)])
        assert history.has_within("BTCUSDT", "5m", "long", T0 + 899, 900) is True
        assert history.has_within("BTCUSDT", "5m", "long", T0 + 900, 900) is False
        assert history.has_within("BTCUSDT", "5m", "short", T0, 900) is False

    def test_replace_updates_indexes(self):
        original = _signal("a", T0)
        history = SignalHistory([original])
        resolved = original.with_outcome("tp1", T0 + 600, 2)
        assert history.replace(resolved) is True
        assert history.latest("BTCUSDT", "5m", "long").outcome == "tp1"
        assert history.for_stream("BTCUSDT", "5m")[0].bars_held == 2
        assert history.replace(_signal("missing", T0)) is False

    def test_tail(self):
        history = SignalHistory([_signal(f"s{i}", T0 + i) for i in range(4)])
        assert [s.id for s in history.tail(2)] == ["s2", "s3"]
        assert history.tail(0) == []
        assert len(history.tail()) == 4

    def test_eviction_clears_empty_index(self):
        history = SignalHistory([_signal("old", T0, symbol="ETHUSDT")], cap=1)
        history.add(_signal("new", T0 + 300))
        assert history.latest("ETHUSDT", "5m") is None

    def test_invalid_cap(self):
        with pytest.raises(ValueError):
            SignalHistory(cap=0)
