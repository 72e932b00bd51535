from __future__ import annotations

import time
from collections.abc import Callable, Hashable
from typing import Generic, TypeVar

from soundpath.domain import CacheEntry

T = TypeVar("T")


class TtlCache(Generic[T]):
    """Keyed results that expire after a fixed age; no other invalidation."""

    def __init__(self, *, ttl_s: float, clock: Callable[[], float] | None = None) -> None:
        self.ttl_s = max(0.0, float(ttl_s))
        self._clock = clock or time.monotonic
        self._entries: dict[Hashable, CacheEntry[T]] = {}

    def get(self, key: Hashable) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.computed_at >= self.ttl_s:
            self._entries.pop(key, None)
            return None
        return entry.data

    def put(self, key: Hashable, data: T) -> T:
        self._entries[key] = CacheEntry(data=data, computed_at=self._clock())
        return data

    def get_or_compute(self, key: Hashable, compute: Callable[[], T]) -> T:
        cached = self.get(key)
        if cached is not None:
            return cached
        return self.put(key, compute())

    def __len__(self) -> int:
        return len(self._entries)
