from __future__ import annotations

import pytest

from common.rate_limiter import SlidingWindowRateLimiter, RateLimitError


class FakeClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:  # acts like time.monotonic
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


def test_non_blocking_exceeds_limit():
    clock = FakeClock()
    rl = SlidingWindowRateLimiter(max_calls=2, per_seconds=1.0, clock=clock)

    rl.acquire()
    rl.acquire()
    with pytest.raises(RateLimitError):
        rl.acquire(blocking=False)

    clock.advance(1.0)
    rl.acquire(blocking=False)  # window rolled over


def test_blocking_sleeps_until_slot_frees():
    clock = FakeClock()
    naps = []

    def sleep(seconds: float) -> None:
        naps.append(seconds)
        clock.advance(seconds)

    rl = SlidingWindowRateLimiter(max_calls=1, per_seconds=0.5, clock=clock, sleep=sleep)
    rl.acquire()
    clock.advance(0.2)
    rl.acquire()

    assert naps == [pytest.approx(0.3)]


def test_rejects_bad_configuration():
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(max_calls=0, per_seconds=1.0)
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(max_calls=1, per_seconds=0)
