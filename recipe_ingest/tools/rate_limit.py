from __future__ import annotations

import threading
import time
from typing import Callable


class TokenBucket:
    """Non-blocking per-minute limiter; capacity equals the per-minute rate."""

    def __init__(self, rate_per_minute: int, *, clock: Callable[[], float] = time.monotonic):
        self.capacity = max(int(rate_per_minute), 1)
        self._refill_per_second = self.capacity / 60.0
        self._tokens = float(self.capacity)
        self._clock = clock
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._updated, 0.0)
        self._tokens = min(self.capacity, self._tokens + elapsed * self._refill_per_second)
        self._updated = now

    def try_acquire(self, tokens: int = 1) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens
