"""
Token-bucket rate limiting for third-party providers.
"""

import threading
import time
from typing import Callable


class RateLimiter:
    """Thread-safe token bucket shared by all callers of one provider."""

    def __init__(
        self,
        rate: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            rate: Tokens added per second. Zero or less disables limiting.
            burst: Bucket capacity
        """
        self.rate = rate
        self.capacity = max(1, burst)
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        self._updated = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)

    def acquire(self) -> None:
        """Block until a token is available."""
        if self.rate <= 0:
            return
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait = (1 - self._tokens) / self.rate
            self._sleep(wait)
