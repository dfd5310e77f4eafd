"""Bounded in-memory signal history with composite-key indexes."""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Iterator, NamedTuple, Optional

from signaldesk.strategy.models import Signal


class StreamKey(NamedTuple):
    symbol: str
    timeframe: str


class SideKey(NamedTuple):
    symbol: str
    timeframe: str
    side: str


class SignalHistory:
    """Append-only signal history capped at *cap* entries.

    Signals are kept in insertion order; when the cap is exceeded the
    oldest entries are evicted.  Lookups by stream and by side go through
    per-key indexes instead of scanning the whole history.
    """

    def __init__(self, signals: Iterable[Signal] = (), cap: int = 2000) -> None:
        if cap <= 0:
            raise ValueError(f"cap must be positive, got {cap}")
        self._cap = cap
        self._signals: list[Signal] = []
        self._by_stream: dict[StreamKey, list[Signal]] = defaultdict(list)
        self._by_side: dict[SideKey, list[Signal]] = defaultdict(list)
        for signal in signals:
            self._append(signal)
        self._evict()

    def __len__(self) -> int:
        return len(self._signals)

    def __iter__(self) -> Iterator[Signal]:
        return iter(list(self._signals))

    @property
    def cap(self) -> int:
        return self._cap

    # ── Queries ──────────────────────────────────────────────────────────

    def for_stream(self, symbol: str, timeframe: str) -> list[Signal]:
        return list(self._by_stream.get(StreamKey(symbol, timeframe), ()))

    def latest(
        self, symbol: str, timeframe: str, side: Optional[str] = None
    ) -> Optional[Signal]:
        """Most recently added signal for the stream, optionally one side only."""
        if side is None:
            bucket = self._by_stream.get(StreamKey(symbol, timeframe))
        else:
            bucket = self._by_side.get(SideKey(symbol, timeframe, side))
        return bucket[-1] if bucket else None

    def has_within(
        self, symbol: str, timeframe: str, side: str, timestamp: int, seconds: float
    ) -> bool:
        """True if a same-side signal lies strictly within *seconds* of *timestamp*."""
        bucket = self._by_side.get(SideKey(symbol, timeframe, side), ())
        return any(abs(s.timestamp - timestamp) < seconds for s in bucket)

    def tail(self, limit: Optional[int] = None) -> list[Signal]:
        if limit is None:
            return list(self._signals)
        if limit <= 0:
            return []
        return self._signals[-limit:]

    # ── Mutation ─────────────────────────────────────────────────────────

    def add(self, signal: Signal) -> None:
        self._append(signal)
        self._evict()

    def extend(self, signals: Iterable[Signal]) -> None:
        for signal in signals:
            self._append(signal)
        self._evict()

    def replace(self, updated: Signal) -> bool:
        """Swap in *updated* for the stored signal with the same id."""
        for i, existing in enumerate(self._signals):
            if existing.id == updated.id:
                self._signals[i] = updated
                self._swap(self._by_stream[_stream_key(existing)], updated)
                self._swap(self._by_side[_side_key(existing)], updated)
                return True
        return False

    def _append(self, signal: Signal) -> None:
        self._signals.append(signal)
        self._by_stream[_stream_key(signal)].append(signal)
        self._by_side[_side_key(signal)].append(signal)

    def _evict(self) -> None:
        overflow = len(self._signals) - self._cap
        if overflow <= 0:
            return
        evicted, self._signals = self._signals[:overflow], self._signals[overflow:]
        for signal in evicted:
            self._drop(self._by_stream, _stream_key(signal), signal)
            self._drop(self._by_side, _side_key(signal), signal)

    @staticmethod
    def _drop(index: dict, key: tuple, signal: Signal) -> None:
        bucket = index[key]
        for i, existing in enumerate(bucket):
            if existing.id == signal.id:
                del bucket[i]
                break
        if not bucket:
            del index[key]

    @staticmethod
    def _swap(bucket: list[Signal], updated: Signal) -> None:
        for i, existing in enumerate(bucket):
            if existing.id == updated.id:
                bucket[i] = updated
                return


def _stream_key(signal: Signal) -> StreamKey:
    return StreamKey(signal.symbol, signal.timeframe)


def _side_key(signal: Signal) -> SideKey:
    return SideKey(signal.symbol, signal.timeframe, signal.side)
