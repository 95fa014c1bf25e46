from __future__ import annotations

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Thread-safe request spacer.

    Each `wait()` reserves the next free slot under a lock, so callers are
    released in reservation (FIFO) order. `set_rate()` only changes the
    spacing of slots reserved after the call; a waiter that already holds a
    slot keeps it. A rate of 0 or less disables limiting.
    """

    def __init__(
        self,
        requests_per_second: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._interval = self._to_interval(requests_per_second)
        self._next_slot = 0.0

    @staticmethod
    def _to_interval(rps: float) -> float:
        return 1.0 / rps if rps > 0 else 0.0

    @property
    def requests_per_second(self) -> float:
        with self._lock:
            return 1.0 / self._interval if self._interval else 0.0

    def set_rate(self, requests_per_second: float) -> None:
        with self._lock:
            self._interval = self._to_interval(requests_per_second)
        logger.debug(f"Rate limit set to {requests_per_second} req/s")

    def reserve(self) -> float:
        """Reserve the next slot and return the absolute time it opens."""
        with self._lock:
            now = self._clock()
            if self._interval <= 0:
                return now
            slot = max(now, self._next_slot)
            self._next_slot = slot + self._interval
            return slot

    def wait(self, cancel_event: threading.Event | None = None) -> bool:
        """Block until a request slot is available.

        Returns False if `cancel_event` fired before the slot opened.
        """
        slot = self.reserve()
        delay = slot - self._clock()
        if delay <= 0:
            return not (cancel_event is not None and cancel_event.is_set())
        if cancel_event is None:
            time.sleep(delay)
            return True
        return not cancel_event.wait(timeout=delay)
