from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque


class RateLimitError(RuntimeError):
    """Raised when a non-blocking acquire finds no free slot."""


class SlidingWindowRateLimiter:
    """
    Thread-safe sliding-window limiter for outbound push calls.

    - At most `max_calls` acquisitions succeed within any `per_seconds` window.
    - `acquire(blocking=True)` sleeps until a slot frees up; with
      `blocking=False` it raises `RateLimitError` instead.

    Guards a single process. Dispatch threads share one instance per relay.
    """

    def __init__(
        self,
        max_calls: int,
        per_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_calls <= 0:
            raise ValueError("max_calls must be > 0")
        if per_seconds <= 0:
            raise ValueError("per_seconds must be > 0")
        self._max_calls = max_calls
        self._per_seconds = per_seconds
        self._events: Deque[float] = deque()
        self._lock = threading.Lock()
        self._clock = clock
        self._sleep = sleep

    def _wait_time(self, now: float) -> float:
        window_start = now - self._per_seconds
        while self._events and self._events[0] <= window_start:
            self._events.popleft()
        if len(self._events) < self._max_calls:
            return 0.0
        return max(0.0, (self._events[0] + self._per_seconds) - now)

    def acquire(self, *, blocking: bool = True) -> None:
        while True:
            with self._lock:
                now = self._clock()
                delay = self._wait_time(now)
                if delay == 0.0:
                    self._events.append(now)
                    return
            if not blocking:
                raise RateLimitError("push rate limit exceeded; no slot available")
            # short naps keep shutdown responsive
            self._sleep(min(delay, 1.0))
