from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, Optional, Sequence, Tuple

from cobaltauth.storage.redis_cache import CounterCheck, CounterTier, blacklist_key


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache`.

    Same async surface and counter semantics, with expiry evaluated lazily
    against ``clock`` (monotonic seconds). Only suitable for one process:
    tests, TEST_MODE, or ALLOW_REDIS_FALLBACK_DEV.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[int, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._values.clear()

    def _live(self, key: str, now: float) -> Optional[Tuple[int, Optional[float]]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= now:
            self._values.pop(key, None)
            return None
        return entry

    def _sweep(self, now: float) -> None:
        """Drop every expired key; runs at most once per ``sweep_interval``."""
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        expired = [
            key
            for key, (_, expires_at) in self._values.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._values[key]

    @staticmethod
    def _ttl(expires_at: Optional[float], now: float, default: int) -> int:
        if expires_at is None:
            return default
        return max(0, math.ceil(expires_at - now))

    async def blacklist_add(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            now = self._clock()
            self._sweep(now)
            self._values[blacklist_key(token)] = (1, now + ttl_seconds)

    async def blacklist_contains(self, token: str) -> bool:
        with self._lock:
            return self._live(blacklist_key(token), self._clock()) is not None

    async def check_counters(self, tiers: Sequence[CounterTier]) -> CounterCheck:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            current: list[int] = []
            for index, (key, limit, window) in enumerate(tiers, start=1):
                entry = self._live(key, now)
                count = entry[0] if entry else 0
                if count >= limit:
                    expires_at = entry[1] if entry else None
                    return CounterCheck(False, index, self._ttl(expires_at, now, window), [count])
                current.append(count)
            counts: list[int] = []
            for (key, _, window), count in zip(tiers, current):
                entry = self._live(key, now)
                expires_at = entry[1] if entry else now + window
                self._values[key] = (count + 1, expires_at)
                counts.append(count + 1)
            first_expiry = self._values[tiers[0][0]][1]
            return CounterCheck(True, 0, self._ttl(first_expiry, now, tiers[0][2]), counts)

    async def get_counter(self, key: str) -> Tuple[int, int]:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                return 0, 0
            return entry[0], self._ttl(entry[1], now, 0)

    async def reset_counters(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._values.pop(key, None) is not None:
                    removed += 1
            return removed
