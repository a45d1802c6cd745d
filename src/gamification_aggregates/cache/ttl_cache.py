from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    key: str
    handle: asyncio.Future[T]
    created_at: float
    ttl_s: float

    def is_fresh(self, now: float) -> bool:
        return now - self.created_at <= self.ttl_s


class TTLCache:
    """
    Keyed store of in-flight or completed async results with a time-to-live.

    The handle stored for a key is registered before the computation first runs, so a
    second caller for the same key shares the pending result instead of starting a new
    one. This relies on a single event loop: check-and-register never awaits. Stale
    entries are dropped lazily, on the next lookup.

    Computations that raise are evicted as soon as they settle; only successful results
    live for the full TTL.
    """

    def __init__(
        self,
        ttl_s: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_s < 0:
            raise ValueError(f"ttl_s must be >= 0, got {ttl_s}")
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: dict[str, CacheEntry[Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> asyncio.Future[Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        if not entry.is_fresh(float(self._clock())):
            del self._entries[key]
            logger.debug("Cache entry expired: %s", key)
            return None

        return entry.handle

    def set(
        self,
        key: str,
        handle: asyncio.Future[T],
        *,
        ttl_s: float | None = None,
    ) -> CacheEntry[T]:
        entry = CacheEntry(
            key=key,
            handle=handle,
            created_at=float(self._clock()),
            ttl_s=self.ttl_s if ttl_s is None else ttl_s,
        )
        self._entries[key] = entry
        return entry

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        *,
        ttl_s: float | None = None,
    ) -> asyncio.Future[T]:
        cached = self.get(key)
        if cached is not None:
            logger.debug("Cache hit: %s", key)
            return cached

        logger.debug("Cache miss: %s", key)
        handle = asyncio.ensure_future(compute())
        entry = self.set(key, handle, ttl_s=ttl_s)
        handle.add_done_callback(partial(self._on_settled, entry))
        return handle

    def _on_settled(self, entry: CacheEntry[Any], handle: asyncio.Future[Any]) -> None:
        if not handle.cancelled() and handle.exception() is None:
            return
        # Only evict if the key still points at this computation.
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]
            logger.debug("Evicted failed computation: %s", entry.key)

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_by_prefix(self, prefix: str) -> int:
        """Drop every entry whose key starts with `prefix`. In-flight holders are unaffected."""
        return self.invalidate_where(lambda key: key.startswith(prefix))

    def invalidate_where(self, predicate: Callable[[str], bool]) -> int:
        stale = [key for key in self._entries if predicate(key)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
