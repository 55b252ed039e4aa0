from __future__ import annotations

from collections import defaultdict, deque
import threading
import time
from typing import Callable


class SlidingWindowLimiter:
    """In-process limiter: at most ``max_events`` per key within a rolling window."""

    def __init__(self, time_source: Callable[[], float] = time.time) -> None:
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._time = time_source

    def _trim(self, events: deque[float], window_start: float) -> None:
        while events and events[0] < window_start:
            events.popleft()

    def allow(self, key: str, max_events: int, period_seconds: int) -> bool:
        now = self._time()
        with self._lock:
            events = self._events[key]
            self._trim(events, now - period_seconds)
            if len(events) >= max_events:
                return False
            events.append(now)
            return True

    def retry_after(self, key: str, period_seconds: int) -> int:
        """Whole seconds until the oldest event in the window expires."""
        now = self._time()
        with self._lock:
            events = self._events.get(key)
            if not events:
                return 0
            self._trim(events, now - period_seconds)
            if not events:
                return 0
            return max(1, int(events[0] + period_seconds - now + 0.999))

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
