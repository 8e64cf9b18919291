"""
Pegkeeper: Clock Utilities

This module implements the small clock abstraction used by the oracle,
contract and service. All engine timestamps are integer milliseconds;
components take a zero-argument callable so simulations and tests can
drive time explicitly.

Key responsibilities:
- Provide the wall-clock millisecond source used in production
- Provide a manually advanced clock for simulations and tests

External dependencies:
- time: Standard library wall and monotonic clocks

Thread safety: :class:`SystemClock` is read-only after construction;
:class:`ManualClock` guards its value with a lock.
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

import threading
import time

from pegkeeper.core.types import Millis


def now_ms() -> Millis:
    """Return the current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


class SystemClock:
    """Epoch-millisecond source that never runs backwards.

    The wall clock is sampled once at construction; later readings add
    the elapsed :func:`time.monotonic_ns` so a system clock correction
    cannot make timestamps go back in time.
    """

    def __init__(self) -> None:
        self._epoch_ms = now_ms()
        self._origin_ns = time.monotonic_ns()

    def __call__(self) -> Millis:
        return self._epoch_ms + (time.monotonic_ns() - self._origin_ns) // 1_000_000


class ManualClock:
    """Millisecond clock that only moves when told to.

    Used by simulations and tests to make rate limits and lookback
    windows deterministic.

    Example:
        >>> clock = ManualClock(start=1_000)
        >>> clock.advance(500)
        1500
    """

    def __init__(self, start: Millis = 0) -> None:
        self._now = int(start)
        self._lock = threading.Lock()

    def __call__(self) -> Millis:
        with self._lock:
            return self._now

    def advance(self, delta: Millis) -> Millis:
        """Move the clock forward by ``delta`` ms and return the new time."""

        if delta < 0:
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self._now += int(delta)
            return self._now

    def set(self, value: Millis) -> None:
        """Jump the clock to ``value`` (must not be in the past)."""

        with self._lock:
            if value < self._now:
                raise ValueError("ManualClock cannot move backwards")
            self._now = int(value)
