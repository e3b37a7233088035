from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .registry import KeyExchangeRegistry


log = logging.getLogger("keyrelay.sweeper")


@dataclass(frozen=True)
class SweepSummary:
    expired: List[str]
    purged: List[str]


class ExpirySweeper:
    """
    Runs `expire` then `purge` on a registry, one sweep at a time.

    A sweep requested while another is running is skipped (returns None)
    rather than queued. `start()` runs sweeps periodically on a daemon
    thread; `stop()` cancels the schedule and may be followed by `start()`.
    """

    def __init__(self, registry: KeyExchangeRegistry, *, interval_seconds: float = 60.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._registry = registry
        self._interval = interval_seconds
        self._running = threading.Lock()
        self._stop: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    def sweep(self, now: Optional[datetime] = None) -> Optional[SweepSummary]:
        if not self._running.acquire(blocking=False):
            log.debug("sweep already running; skipped")
            return None
        try:
            expired = self._registry.expire(now)
            purged = self._registry.purge(now)
        finally:
            self._running.release()
        return SweepSummary(expired=expired, purged=purged)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        stop = threading.Event()
        self._stop = stop
        self._thread = threading.Thread(target=self._loop, args=(stop,), name="keyrelay-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        self._stop = None

    def _loop(self, stop: threading.Event) -> None:
        while not stop.wait(self._interval):
            try:
                self.sweep()
            except Exception:
                # retried on the next tick
                log.exception("expiry sweep failed")
