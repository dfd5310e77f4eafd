"""Market data models — candles and timeframe metadata."""

from dataclasses import dataclass


@dataclass(frozen=True)
class Candle:
    """A single OHLCV bar.  ``time`` is the bar open in unix seconds."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


# ── Timeframes ───────────────────────────────────────────────────────────

TIMEFRAME_SECONDS: dict[str, int] = {
    "1m": 60,
    "3m": 180,
    "5m": 300,
    "15m": 900,
    "1H": 3600,
    "4H": 14400,
    "D": 86400,
    "W": 604800,
}

TIMEFRAMES: tuple[str, ...] = tuple(TIMEFRAME_SECONDS)

# Exchange interval codes for each timeframe.
BINANCE_INTERVALS: dict[str, str] = {
    "1m": "1m",
    "3m": "3m",
    "5m": "5m",
    "15m": "15m",
    "1H": "1h",
    "4H": "4h",
    "D": "1d",
    "W": "1w",
}


def timeframe_seconds(timeframe: str) -> int:
    """Return the bar duration in seconds for *timeframe*.

    Raises ``ValueError`` for an unknown timeframe.
    """
    try:
        return TIMEFRAME_SECONDS[timeframe]
    except KeyError:
        raise ValueError(
            f"Unknown timeframe '{timeframe}'. "
            f"Available: {', '.join(TIMEFRAMES)}"
        ) from None
