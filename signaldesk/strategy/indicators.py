"""Technical indicators — EMA, ATR, ADX, Bollinger bandwidth, Donchian, Heikin-Ashi.

Pure functions, no I/O.  Every series is aligned to its input: indices
before the window is full hold ``nan``, and a series shorter than the
window comes back all-``nan`` rather than raising.
"""

import math
from typing import NamedTuple, Sequence

from signaldesk.market.models import Candle

NAN = float("nan")


def _check_period(period: int) -> None:
    if period <= 0:
        raise ValueError(f"Period must be positive, got {period}")


def _true_range(candle: Candle, prev_close: float) -> float:
    return max(
        candle.high - candle.low,
        abs(candle.high - prev_close),
        abs(candle.low - prev_close),
    )


# ── EMA ──────────────────────────────────────────────────────────────────


def calculate_ema(values: Sequence[float], period: int) -> list[float]:
    """Calculate an Exponential Moving Average series.

    Uses the standard EMA formula:
        ``EMA_today = value × k + EMA_yesterday × (1 - k)``
    where ``k = 2 / (period + 1)``.

    The first EMA value is seeded with the SMA of the first *period*
    values at index ``period - 1``.
    """
    _check_period(period)
    n = len(values)
    ema: list[float] = [NAN] * n
    if n < period:
        return ema

    k = 2.0 / (period + 1)
    prev = sum(values[:period]) / period
    ema[period - 1] = prev

    for i in range(period, n):
        prev = values[i] * k + prev * (1 - k)
        ema[i] = prev

    return ema


def ema_of_closes(candles: Sequence[Candle], period: int) -> list[float]:
    return calculate_ema([c.close for c in candles], period)


# ── ATR ──────────────────────────────────────────────────────────────────


def calculate_true_ranges(candles: Sequence[Candle]) -> list[float]:
    """True range per bar.  The first bar uses its own close as previous close."""
    trs: list[float] = []
    for i, candle in enumerate(candles):
        prev_close = candles[i - 1].close if i > 0 else candle.close
        trs.append(_true_range(candle, prev_close))
    return trs


def calculate_atr(candles: Sequence[Candle], period: int = 14) -> list[float]:
    """Calculate a Wilder-smoothed Average True Range series.

    TR = max(high - low, |high - prev_close|, |low - prev_close|)

    The seed at index *period* is the simple average of TR[1..period]
    (the first bar has no real previous close).  Afterwards:
        ``ATR = (prev_ATR × (period - 1) + TR) / period``
    """
    _check_period(period)
    n = len(candles)
    atr: list[float] = [NAN] * n
    if n <= period:
        return atr

    trs = calculate_true_ranges(candles)
    prev = sum(trs[1 : period + 1]) / period
    atr[period] = prev

    for i in range(period + 1, n):
        prev = (prev * (period - 1) + trs[i]) / period
        atr[i] = prev

    return atr


# ── ADX ──────────────────────────────────────────────────────────────────


def calculate_adx(candles: Sequence[Candle], period: int = 14) -> list[float]:
    """Calculate the Average Directional Index (ADX).

    Algorithm:
        1. +DM / -DM directional movement per bar.
        2. Wilder-smooth +DM, -DM, and TR over *period*.
        3. +DI = 100 × smoothed_+DM / smoothed_TR
        4. -DI = 100 × smoothed_-DM / smoothed_TR
        5. DX = 100 × |+DI − −DI| / (+DI + −DI)
        6. ADX = Wilder-smoothed DX over *period*.

    The first ADX value lands at index ``2 × period - 1``; a series with
    fewer than ``2 × period`` candles is all ``nan``.
    """
    _check_period(period)
    n = len(candles)
    adx: list[float] = [NAN] * n
    if n < 2 * period:
        return adx

    plus_dm_raw: list[float] = [0.0]
    minus_dm_raw: list[float] = [0.0]
    tr_raw: list[float] = [0.0]

    for i in range(1, n):
        curr = candles[i]
        prev = candles[i - 1]
        up_move = curr.high - prev.high
        down_move = prev.low - curr.low

        plus_dm_raw.append(up_move if (up_move > down_move and up_move > 0) else 0.0)
        minus_dm_raw.append(
            down_move if (down_move > up_move and down_move > 0) else 0.0
        )
        tr_raw.append(_true_range(curr, prev.close))

    def _dx(s_pdm: float, s_mdm: float, s_tr: float) -> float:
        if s_tr == 0:
            return 0.0
        plus_di = 100.0 * s_pdm / s_tr
        minus_di = 100.0 * s_mdm / s_tr
        di_sum = plus_di + minus_di
        if di_sum == 0:
            return 0.0
        return 100.0 * abs(plus_di - minus_di) / di_sum

    smoothed_pdm = sum(plus_dm_raw[1 : period + 1])
    smoothed_mdm = sum(minus_dm_raw[1 : period + 1])
    smoothed_tr = sum(tr_raw[1 : period + 1])
    dx_values = [_dx(smoothed_pdm, smoothed_mdm, smoothed_tr)]

    for i in range(period + 1, n):
        smoothed_pdm = smoothed_pdm - smoothed_pdm / period + plus_dm_raw[i]
        smoothed_mdm = smoothed_mdm - smoothed_mdm / period + minus_dm_raw[i]
        smoothed_tr = smoothed_tr - smoothed_tr / period + tr_raw[i]
        dx_values.append(_dx(smoothed_pdm, smoothed_mdm, smoothed_tr))

    # dx_values[0] corresponds to candle index *period*
    adx_prev = sum(dx_values[:period]) / period
    adx[2 * period - 1] = adx_prev
    for j in range(period, len(dx_values)):
        adx_prev = (adx_prev * (period - 1) + dx_values[j]) / period
        adx[period + j] = adx_prev

    return adx


# ── Bollinger / Donchian ────────────────────────────────────────────────


def calculate_bollinger_bandwidth(
    values: Sequence[float], period: int = 20, std_dev: float = 2.0
) -> list[float]:
    """Bollinger bandwidth in percent of the middle band.

    ``(upper - lower) / middle × 100`` with a population σ over *period*.
    A zero middle band yields ``nan``.
    """
    _check_period(period)
    n = len(values)
    bandwidth: list[float] = [NAN] * n

    for i in range(period - 1, n):
        window = values[i - period + 1 : i + 1]
        sma = sum(window) / period
        sigma = math.sqrt(sum((x - sma) ** 2 for x in window) / period)
        upper = sma + std_dev * sigma
        lower = sma - std_dev * sigma
        bandwidth[i] = (upper - lower) / sma * 100 if sma else NAN

    return bandwidth


class DonchianBand(NamedTuple):
    upper: float
    lower: float
    mid: float


_EMPTY_BAND = DonchianBand(NAN, NAN, NAN)


def calculate_donchian(candles: Sequence[Candle], period: int) -> list[DonchianBand]:
    """Rolling highest high / lowest low over *period* bars, inclusive."""
    _check_period(period)
    bands: list[DonchianBand] = [_EMPTY_BAND] * len(candles)

    for i in range(period - 1, len(candles)):
        window = candles[i - period + 1 : i + 1]
        upper = max(c.high for c in window)
        lower = min(c.low for c in window)
        bands[i] = DonchianBand(upper, lower, (upper + lower) / 2)

    return bands


# ── Heikin-Ashi ──────────────────────────────────────────────────────────


def heikin_ashi(candles: Sequence[Candle]) -> list[Candle]:
    """Transform candles into Heikin-Ashi bars.

    ``ha_close = (o + h + l + c) / 4``; ``ha_open`` is the midpoint of the
    previous HA bar's open/close (the first bar uses its own o/c).
    """
    result: list[Candle] = []
    for candle in candles:
        ha_close = (candle.open + candle.high + candle.low + candle.close) / 4
        if result:
            prev = result[-1]
            ha_open = (prev.open + prev.close) / 2
        else:
            ha_open = (candle.open + candle.close) / 2
        result.append(
            Candle(
                time=candle.time,
                open=ha_open,
                high=max(candle.high, ha_open, ha_close),
                low=min(candle.low, ha_open, ha_close),
                close=ha_close,
                volume=candle.volume,
            )
        )
    return result


def last_finite(values: Sequence[float], default: float = NAN) -> float:
    """Last element of *values* when finite, else *default*."""
    if values and math.isfinite(values[-1]):
        return values[-1]
    return default
