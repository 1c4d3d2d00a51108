"""
Rate limiting for reverse geocoding requests.

The public Nominatim instance allows at most one request per second from
a client, so the default gate is a fixed minimum interval rather than a
burst-friendly bucket.
"""

from __future__ import annotations

import time
import threading
from typing import Optional

from .base import RateLimiter


class SimpleRateGate(RateLimiter):
    """
    Rate gate with a fixed minimum interval between requests.

    The first call passes immediately; every later call blocks until
    `1 / requests_per_second` seconds have passed since the previous one.
    """

    def __init__(self, requests_per_second: float):
        """
        Initialize rate gate.

        Args:
            requests_per_second: Target rate (requests per second)
        """
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be > 0")

        self.interval_s = 1.0 / float(requests_per_second)
        self._last: Optional[float] = None
        self.lock = threading.Lock()

    def wait(self) -> None:
        """Block until the minimum interval since the last request has passed."""
        with self.lock:
            now = time.monotonic()
            if self._last is not None:
                delay_needed = self._last + self.interval_s - now
                if delay_needed > 0:
                    time.sleep(delay_needed)
                    now = time.monotonic()
            self._last = now


class NoOpRateLimiter(RateLimiter):
    """
    Rate limiter that does nothing (for testing/self-hosted providers).
    """

    def wait(self) -> None:
        """Do nothing."""
        pass


def rate_limiter_for(requests_per_second: Optional[float]) -> RateLimiter:
    """No limit for None or a non-positive rate, otherwise a SimpleRateGate."""
    if not requests_per_second or requests_per_second <= 0:
        return NoOpRateLimiter()
    return SimpleRateGate(requests_per_second)
