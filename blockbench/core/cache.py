"""blockbench.core.cache

Simple in-memory cache with TTL.

A cache is a lie you tell yourself to go faster.
A TTL is the part where you admit you might be wrong.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable
from typing import Any


class TTLCache:
    """Thread-safe TTL cache.

    An entry older than its TTL is treated as absent and dropped on access.
    ``clock`` is injectable so expiry can be tested without sleeping.
    """

    def __init__(self, default_ttl_s: float = 300.0, *, clock: Callable[[], float] = time.monotonic):
        self._default_ttl_s = float(default_ttl_s)
        self._clock = clock
        self._store: dict[Hashable, tuple[float, Any]] = {}
        self._lock = threading.RLock()

    def get(self, key: Hashable) -> Any | None:
        now = self._clock()
        with self._lock:
            item = self._store.get(key)
            if item is None:
                return None
            expires_at, value = item
            if now < expires_at:
                return value
            self._store.pop(key, None)
            return None

    def set(self, key: Hashable, value: Any, *, ttl_s: float | None = None) -> None:
        ttl = self._default_ttl_s if ttl_s is None else float(ttl_s)
        with self._lock:
            self._store[key] = (self._clock() + ttl, value)

    def get_or_set(self, key: Hashable, factory: Callable[[], Any], *, ttl_s: float | None = None) -> Any:
        val = self.get(key)
        if val is not None:
            return val
        val = factory()
        self.set(key, val, ttl_s=ttl_s)
        return val

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._store.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for expires_at, _ in self._store.values() if now < expires_at)
