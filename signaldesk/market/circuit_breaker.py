"""Per-source circuit breaker with doubling backoff.

States:
- ``closed``: requests flow.
- ``open``: requests are skipped until the backoff expires.
- ``half_open``: backoff expired; the next request is a probe.  Success
  closes the breaker, failure re-opens it with double the backoff.
"""

from __future__ import annotations

import time
from typing import Callable

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitBreaker:
    """Backoff state machine for one data source.

    Args:
        base_backoff: Seconds the breaker stays open after a first failure.
        max_backoff: Upper bound on the backoff.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        base_backoff: float = 5.0,
        max_backoff: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._base = base_backoff
        self._max = max_backoff
        self._clock = clock
        self._backoff = 0.0
        self._open_until = 0.0
        self._failures = 0

    @property
    def state(self) -> str:
        if self._failures == 0:
            return CLOSED
        if self._clock() < self._open_until:
            return OPEN
        return HALF_OPEN

    @property
    def backoff(self) -> float:
        return self._backoff

    @property
    def failures(self) -> int:
        return self._failures

    def allow(self) -> bool:
        """True unless the breaker is open."""
        return self.state != OPEN

    def record_success(self) -> None:
        self._failures = 0
        self._backoff = 0.0
        self._open_until = 0.0

    def record_failure(self) -> None:
        now = self._clock()
        if self._backoff == 0:
            self._backoff = self._base
        else:
            self._backoff = min(self._backoff * 2, self._max)
        self._failures += 1
        self._open_until = now + self._backoff
