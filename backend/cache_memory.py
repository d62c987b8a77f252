"""
In-process TTL cache.

`CacheBackend` is the small interface the rest of the backend codes
against (`get/set/delete/delete_prefix/clear`). `InMemoryCache` is the default
implementation: a dict guarded by a lock, with lazy expiry on read and
an optional background sweep thread. A shared backend (Redis, memcached)
can be swapped in by implementing the same five methods and passing it
to `create_app()`.

Usage:
    cache = InMemoryCache(default_ttl=300)
    cache.set("key", value)
    cache.get("key")          # -> value, or None once expired
    cache.start_sweeper(60)   # optional periodic cleanup
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class CacheBackend:
    """Interface for cache backends. Values are opaque to the backend."""

    def get(self, key: str) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class InMemoryCache(CacheBackend):
    """Thread-safe dict cache with per-entry expiry.

    Parameters
    ----------
    default_ttl : float
        Seconds an entry lives when `set()` gets no explicit ttl.
    clock : callable
        Monotonic time source in seconds; injectable for tests.
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def get(self, key: str) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + (self._default_ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        """Drop every key starting with `prefix`. Returns how many were removed."""
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired:
                del self._entries[key]
            remaining = len(self._entries)
        if expired:
            logger.debug("Cache sweep removed %d entries (%d remaining)", len(expired), remaining)
        return len(expired)

    # ── Background sweep ────────────────────────────────────────

    def start_sweeper(self, interval: float) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, args=(interval,), name="cache-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _sweep_loop(self, interval: float) -> None:
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Cache sweep failed")
