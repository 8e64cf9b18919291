"""Pegkeeper – Periodic task primitive.

A :class:`PeriodicTask` runs a callback on a fixed cadence in a daemon
thread. It is the building block for the stabilization service's two
schedules (oracle refresh and rebalance).

Guarantees:

- An exception raised by the callback is logged and the loop continues
  with the next tick.
- :meth:`PeriodicTask.stop` is safe to call at any time, including
  before :meth:`PeriodicTask.start`, and once it returns no further
  callback invocation will begin.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional

from pegkeeper.core.logging import get_logger


logger = get_logger(__name__)

# Floor on the scheduling cadence so a zero interval cannot spin a thread.
MIN_INTERVAL_MS: int = 10


class PeriodicTask:
    """Invoke ``callback`` every ``interval_ms`` milliseconds.

    The first invocation happens one interval after :meth:`start`.
    """

    def __init__(self, name: str, interval_ms: int, callback: Callable[[], object]) -> None:
        self.name = name
        self.interval_ms = max(MIN_INTERVAL_MS, int(interval_ms))
        self._callback = callback
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()
        self.tick_count = 0
        self.error_count = 0

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        """Start the background thread. No-op if already running."""

        with self._lifecycle_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name=f"pegkeeper-{self.name}",
                daemon=True,
            )
            self._thread.start()
        logger.info("PeriodicTask %s: started interval=%dms", self.name, self.interval_ms)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the loop and wait for an in-flight tick to finish.

        When called from the task's own thread (for example from inside
        the callback) the join is skipped; the loop exits after the
        current tick.
        """

        with self._lifecycle_lock:
            thread = self._thread
            self._stop_event.set()
            self._thread = None

        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("PeriodicTask %s: stopped after %d ticks", self.name, self.tick_count)

    def _run(self, stop_event: threading.Event) -> None:
        interval_s = self.interval_ms / 1000.0
        while not stop_event.wait(interval_s):
            if stop_event.is_set():
                break
            self.tick_count += 1
            try:
                self._callback()
            except Exception:
                self.error_count += 1
                logger.exception("PeriodicTask %s: tick %d failed", self.name, self.tick_count)
