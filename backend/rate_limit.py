"""Fixed-window in-memory rate limiter.

Counts requests per key (caller + route) inside a window. Best-effort
under concurrency and process-local; it is admission control only.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from errors import RateLimitError

logger = logging.getLogger(__name__)


@dataclass
class RateWindow:
    reset_at: float
    count: int = 0


@dataclass
class RateStatus:
    """Budget left for a key after an admitted request."""

    limit: int
    remaining: int
    reset_after: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(time.time()) + self.reset_after),
        }


class RateLimiter:
    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, RateWindow] = {}
        self._lock = threading.Lock()
        self._last_purge = 0.0

    def check(self, key: str) -> Optional[RateStatus]:
        """Count one request for `key`; raise `RateLimitError` when over budget.

        Returns the remaining budget, or None when limiting is disabled.
        """
        if self.limit <= 0:
            return None
        now = self._clock()
        with self._lock:
            # Purge expired windows once per window to bound memory
            if now - self._last_purge >= self.window_seconds:
                expired = [k for k, w in self._windows.items() if w.reset_at <= now]
                for k in expired:
                    del self._windows[k]
                self._last_purge = now

            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                window = RateWindow(reset_at=now + self.window_seconds, count=0)
                self._windows[key] = window
            reset_after = max(1, math.ceil(window.reset_at - now))
            if window.count >= self.limit:
                logger.warning(
                    "Rate limit exceeded key=%s count=%d limit=%d", key, window.count, self.limit
                )
                raise RateLimitError(reset_after, limit=self.limit, window=self.window_seconds)
            window.count += 1
            return RateStatus(
                limit=self.limit, remaining=self.limit - window.count, reset_after=reset_after
            )

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
