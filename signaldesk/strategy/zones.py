"""Supply/demand zone detection from swing pivots.

A pivot high spawns a supply zone hanging one ATR-multiple below the
high; a pivot low spawns a demand zone sitting one ATR-multiple above the
low.  Zones are then replayed forward against later candles to track
touches and mitigation.
"""

import math
from typing import Sequence

from signaldesk.market.models import Candle
from signaldesk.strategy.models import Zone


def is_pivot_high(candles: Sequence[Candle], index: int, left: int, right: int) -> bool:
    """Return True if no bar within *left*/*right* of *index* has a strictly higher high.

    Window indices that fall outside the series are ignored.
    """
    if not 0 <= index < len(candles):
        return False
    high = candles[index].high
    lo = max(0, index - left)
    hi = min(len(candles) - 1, index + right)
    return all(candles[j].high <= high for j in range(lo, hi + 1) if j != index)


def is_pivot_low(candles: Sequence[Candle], index: int, left: int, right: int) -> bool:
    """Mirror of :func:`is_pivot_high` on lows."""
    if not 0 <= index < len(candles):
        return False
    low = candles[index].low
    lo = max(0, index - left)
    hi = min(len(candles) - 1, index + right)
    return all(candles[j].low >= low for j in range(lo, hi + 1) if j != index)


def _make_zone(zone_type: str, index: int, candle: Candle, top: float, bottom: float) -> Zone:
    return Zone(
        id=f"{zone_type}-{index}-{candle.time}",
        zone_type=zone_type,
        top=top,
        bottom=bottom,
        start_time=candle.time,
        pivot_index=index,
    )


def detect_zones(
    candles: Sequence[Candle],
    atr_values: Sequence[float],
    left: int = 3,
    right: int = 3,
    atr_mult: float = 1.0,
    invalidation_buffer_pct: float = 0.001,
) -> list[Zone]:
    """Detect supply/demand zones and replay their touch/mitigation state.

    Args:
        candles: Ascending candle series.
        atr_values: ATR aligned to *candles*; pivots where ATR is not
            finite are skipped.
        left: Bars to the left of a pivot.
        right: Bars to the right of a pivot.
        atr_mult: Zone height as a multiple of ATR at the pivot.
        invalidation_buffer_pct: Close beyond the zone edge by this
            fraction mitigates the zone.

    Returns:
        All zones in pivot order, mitigated ones included.
    """
    zones: list[Zone] = []
    for i, candle in enumerate(candles):
        atr = atr_values[i] if i < len(atr_values) else math.nan
        if not math.isfinite(atr):
            continue
        if is_pivot_high(candles, i, left, right):
            zones.append(
                _make_zone("supply", i, candle, candle.high, candle.high - atr * atr_mult)
            )
        if is_pivot_low(candles, i, left, right):
            zones.append(
                _make_zone("demand", i, candle, candle.low + atr * atr_mult, candle.low)
            )

    for zone in zones:
        _replay_zone(zone, candles, invalidation_buffer_pct)

    return zones


def _replay_zone(zone: Zone, candles: Sequence[Candle], buffer_pct: float) -> None:
    for candle in candles[zone.pivot_index + 1 :]:
        if zone.zone_type == "demand":
            touched = zone.contains(candle.low)
            invalidated = candle.close < zone.bottom * (1 - buffer_pct)
        else:
            touched = zone.contains(candle.high)
            invalidated = candle.close > zone.top * (1 + buffer_pct)

        if touched:
            zone.fresh = False
            zone.last_touch = candle.time
        if invalidated:
            zone.mitigated = True
            zone.end_time = candle.time
            return


def active_zones(zones: Sequence[Zone]) -> list[Zone]:
    return [z for z in zones if not z.mitigated]
