from __future__ import annotations

import time
from threading import Lock


class SyncRateLimiter:
    """
    Process-wide simple limiter: ensures at least `min_interval_s` between calls.
    Thread-safe.

    Example:
        ```python
        limiter = SyncRateLimiter(min_interval_s=1.0)
        ```
    """

    def __init__(self, *, min_interval_s: float) -> None:
        """Create a limiter; a non-positive interval disables waiting.

        Example:
            ```python
            limiter = SyncRateLimiter(min_interval_s=0.0)
            ```
        """
        self._min_interval_s = float(min_interval_s)
        self._lock = Lock()
        self._next_allowed = 0.0

    @classmethod
    def per_second(cls, requests_per_second: float) -> "SyncRateLimiter":
        """Build a limiter from a requests-per-second budget (0 = unlimited).

        Example:
            ```python
            limiter = SyncRateLimiter.per_second(2.0)
            ```
        """
        interval = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
        return cls(min_interval_s=interval)

    def wait(self) -> None:
        """Block until the next call is allowed.

        Example:
            ```python
            limiter.wait()
            ```
        """
        if self._min_interval_s <= 0:
            return
        with self._lock:
            now = time.monotonic()
            sleep_s = self._next_allowed - now
            if sleep_s > 0:
                time.sleep(sleep_s)
            self._next_allowed = time.monotonic() + self._min_interval_s
