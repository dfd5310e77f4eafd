"""Tests for supply/demand zone detection and replay."""

import math

import pytest

from signaldesk.market.models import Candle
from signaldesk.strategy.zones import (
    active_zones,
    detect_zones,
    is_pivot_high,
    is_pivot_low,
)

T0 = 1_700_000_000


def _make_candle(i: int, h: float, l: float, c: float) -> Candle:
    return Candle(time=T0 + i * 300, open=c, high=h, low=l, close=c)


def _peak_candles() -> list[Candle]:
    """Seven bars with a clear swing high at index 3."""
    highs = [10, 11, 12, 15, 12, 11, 10]
    return [_make_candle(i, h, h - 1, h - 0.5) for i, h in enumerate(highs)]


class TestPivots:
    def test_swing_high(self):
        candles = _peak_candles()
        assert is_pivot_high(candles, 3, 3, 3) is True
        assert is_pivot_high(candles, 2, 3, 3) is False

    def test_equal_neighbour_does_not_reject(self):
        candles = [_make_candle(i, h, h - 1, h - 0.5) for i, h in enumerate([5, 2, 5])]
        assert is_pivot_high(candles, 0, 2, 2) is True
        assert is_pivot_high(candles, 2, 2, 2) is True

    def test_out_of_range_window_ignored(self):
        candles = _peak_candles()
        # No right-hand bars exist for the final candle.
        assert is_pivot_low(candles, 6, 3, 3) is True
        assert is_pivot_high(candles, 7, 3, 3) is False

    def test_swing_low(self):
        lows = [10, 9, 8, 6, 8, 9, 10]
        candles = [_make_candle(i, l + 1, l, l + 0.5) for i, l in enumerate(lows)]
        assert is_pivot_low(candles, 3, 3, 3) is True
        assert is_pivot_low(candles, 4, 3, 3) is False


class TestDetectZones:
    def _supply(self, zones, index):
        return next(z for z in zones if z.zone_type == "supply" and z.pivot_index == index)

    def test_supply_zone_geometry(self):
        candles = _peak_candles()
        zones = detect_zones(candles, [1.0] * len(candles))
        zone = self._supply(zones, 3)
        assert zone.top == pytest.approx(15.0)
        assert zone.bottom == pytest.approx(14.0)
        assert zone.id == f"supply-3-{candles[3].time}"
        assert zone.fresh is True
        assert zone.mitigated is False

    def test_touch_then_mitigation(self):
        candles = _peak_candles() + [
            _make_candle(7, 14.5, 14.0, 14.2),
            _make_candle(8, 15.3, 15.0, 15.2),
        ]
        zones = detect_zones(candles, [1.0] * len(candles))
        zone = self._supply(zones, 3)
        assert zone.fresh is False
        assert zone.last_touch == candles[7].time
        assert zone.mitigated is True
        assert zone.end_time == candles[8].time
        assert zone not in active_zones(zones)

    def test_close_inside_buffer_does_not_mitigate(self):
        candles = _peak_candles() + [_make_candle(7, 15.0, 14.9, 15.01)]
        zones = detect_zones(candles, [1.0] * len(candles))
        assert self._supply(zones, 3).mitigated is False

    def test_demand_zone_geometry(self):
        lows = [10, 9, 8, 6, 8, 9, 10]
        candles = [_make_candle(i, l + 1, l, l + 0.5) for i, l in enumerate(lows)]
        zones = detect_zones(candles, [0.5] * len(candles), atr_mult=2.0)
        demand = next(z for z in zones if z.zone_type == "demand" and z.pivot_index == 3)
        assert demand.bottom == pytest.approx(6.0)
        assert demand.top == pytest.approx(7.0)

    def test_nan_atr_skips_pivots(self):
        candles = _peak_candles()
        assert detect_zones(candles, [math.nan] * len(candles)) == []
