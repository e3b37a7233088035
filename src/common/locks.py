from __future__ import annotations

import threading
import zlib
from typing import List


class StripedLock:
    """
    A fixed pool of locks selected by key.

    - Keys hashing to the same stripe share a lock; unrelated keys mostly don't.
    - Stripe selection uses crc32 so it is stable across processes.
    - Locks are not reentrant: never take two keys from the same pool at once.
    """

    def __init__(self, stripes: int = 64) -> None:
        if stripes <= 0:
            raise ValueError("stripes must be > 0")
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def __len__(self) -> int:
        return len(self._locks)

    def for_key(self, key: str) -> threading.Lock:
        idx = zlib.crc32(key.encode("utf-8")) % len(self._locks)
        return self._locks[idx]
