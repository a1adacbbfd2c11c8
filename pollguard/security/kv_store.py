"""Key-value store contract for rate-limit counters and CSRF tokens.

The rate limiter and CSRF manager never touch a concrete backend; they
are handed something satisfying ``KeyValueStore``. The in-process store
below is the minimal implementation and only holds for a single
instance. ``pollguard.storage.repositories.SQLiteKeyValueStore`` is the
shared, restart-safe alternative.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple


@dataclass(frozen=True)
class WindowCounter:
    """Counter state after an atomic increment."""

    count: int
    window_start: float


class KeyValueStore(Protocol):
    """Storage contract required by RateLimiter and CsrfTokenManager."""

    async def get(self, key: str) -> Optional[str]:
        """Return the live value for key."""

    async def set(
        self, key: str, value: str, ttl_seconds: Optional[float] = None
    ) -> None:
        """Store value, optionally expiring after ttl_seconds."""

    async def delete(self, key: str) -> None:
        """Remove key (value and counter)."""

    async def compare_and_set(
        self,
        key: str,
        expected: str,
        new_value: str,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        """Replace value only if it currently equals expected."""

    async def increment_window(
        self, key: str, window_seconds: float, now: float
    ) -> WindowCounter:
        """Atomically count one hit inside a fixed window.

        The counter restarts at 1 when ``now - window_start`` exceeds
        ``window_seconds``.
        """


class InMemoryKeyValueStore:
    """Process-local store for development, tests and single-instance runs."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._counters: Dict[str, Tuple[int, float, float]] = {}
        self._lock = asyncio.Lock()

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    def _expiry(self, ttl_seconds: Optional[float]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds is not None else None

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live_value(key)

    async def set(
        self, key: str, value: str, ttl_seconds: Optional[float] = None
    ) -> None:
        async with self._lock:
            self._values[key] = (value, self._expiry(ttl_seconds))

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)
            self._counters.pop(key, None)

    async def compare_and_set(
        self,
        key: str,
        expected: str,
        new_value: str,
        ttl_seconds: Optional[float] = None,
    ) -> bool:
        async with self._lock:
            if self._live_value(key) != expected:
                return False
            self._values[key] = (new_value, self._expiry(ttl_seconds))
            return True

    async def increment_window(
        self, key: str, window_seconds: float, now: float
    ) -> WindowCounter:
        async with self._lock:
            current = self._counters.get(key)
            if current is None or now - current[1] > window_seconds:
                count, window_start = 1, now
            else:
                count, window_start = current[0] + 1, current[1]
            self._counters[key] = (count, window_start, window_seconds)
            return WindowCounter(count=count, window_start=window_start)

    async def purge_expired(self, now: Optional[float] = None) -> int:
        """Drop expired values and counters whose window has closed."""
        now = self._clock() if now is None else now
        async with self._lock:
            stale_values = [
                key
                for key, (_, expires_at) in self._values.items()
                if expires_at is not None and expires_at <= now
            ]
            stale_counters = [
                key
                for key, (_, window_start, window) in self._counters.items()
                if now - window_start > window
            ]
            for key in stale_values:
                del self._values[key]
            for key in stale_counters:
                del self._counters[key]
            return len(stale_values) + len(stale_counters)
