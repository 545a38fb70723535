"""Injected read-through cache used for metadata and canonical-page lookups."""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from cachetools import TLRUCache


class Cache(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...


class TTLMemoryCache:
    """In-process cache with a per-entry TTL.

    Safe for concurrent readers and a background refresher. Pass a `timer`
    to make expiry deterministic in tests.
    """

    def __init__(
        self,
        maxsize: int = 1024,
        default_ttl: float | None = 300.0,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self._lock = threading.RLock()
        self._cache: TLRUCache = TLRUCache(maxsize=maxsize, ttu=self._expires_at, timer=timer)

    @staticmethod
    def _expires_at(_key: str, entry: tuple[Any, float | None], now: float) -> float:
        ttl = entry[1]
        return math.inf if ttl is None else now + ttl

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._cache.get(key)
        if entry is None:
            return default
        return entry[0]

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        effective = self.default_ttl if ttl is None else ttl
        if effective is not None and effective <= 0:
            return
        with self._lock:
            self._cache[key] = (value, effective)

    def delete(self, key: str) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)


class NullCache:
    """Cache that never stores anything."""

    def get(self, key: str, default: Any = None) -> Any:
        return default

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        return None

    def delete(self, key: str) -> None:
        return None

    def clear(self) -> None:
        return None
