"""Bounded, TTL-expiring LRU cache shared by the scanner and the registry reader."""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """
    Hash map plus recency ordering with a per-entry expiry checked at read time.

    Expired entries are treated as absent no matter where they sit in the LRU order.
    When the entry count exceeds ``max_size`` the least recently accessed entry goes first.
    """

    def __init__(self, max_size: int, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic):
        if int(max_size) < 1:
            raise ValueError(f"max_size must be >= 1 (got {max_size!r})")
        if float(ttl_seconds) <= 0:
            raise ValueError(f"ttl_seconds must be > 0 (got {ttl_seconds!r})")
        self._max_size = int(max_size)
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entries: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: K) -> V | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self._ttl)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)

    def resize(self, max_size: int) -> None:
        if int(max_size) < 1:
            raise ValueError(f"max_size must be >= 1 (got {max_size!r})")
        with self._lock:
            self._max_size = int(max_size)
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def stats(self) -> dict[str, int]:
        return {"size": self.size(), "max": self._max_size}
