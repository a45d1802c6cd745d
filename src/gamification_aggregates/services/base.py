from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from gamification_aggregates.cache.keys import key_mentions_scope
from gamification_aggregates.cache.ttl_cache import TTLCache
from gamification_aggregates.client.executor import PipelineExecutor
from gamification_aggregates.query.builder import AggregateQueryBuilder
from gamification_aggregates.query.types import Scope

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DomainAggregator:
    """
    Shared plumbing for the typed query services.

    Subclasses derive a cache key per call, then hand `_cached` a computation that
    builds the pipeline, executes it and post-processes the rows. The cache instance is
    injected so several services can share one store (and one invalidation surface).
    """

    def __init__(
        self,
        *,
        executor: PipelineExecutor,
        cache: TTLCache,
        ttl_s: float,
        builder: AggregateQueryBuilder | None = None,
        batch_size: int = 100,
    ) -> None:
        self.executor = executor
        self.cache = cache
        self.ttl_s = ttl_s
        self.batch_size = batch_size
        self.builder = builder or AggregateQueryBuilder()

    async def _cached(self, key: str, compute: Callable[[], Awaitable[T]]) -> T:
        handle = self.cache.get_or_compute(key, compute, ttl_s=self.ttl_s)
        # Shield so one caller giving up does not cancel the work other callers share.
        return await asyncio.shield(handle)

    async def _graceful(self, operation: str, compute: Awaitable[T], default: T) -> T:
        try:
            return await compute
        except Exception:
            # CancelledError is a BaseException and still propagates.
            logger.exception("%s.%s failed; returning default", type(self).__name__, operation)
            return default

    def invalidate_scope(self, scope: Scope) -> int:
        """Drop every cached result about any id in `scope`, including multi-id lookups."""
        return self.cache.invalidate_where(lambda key: key_mentions_scope(key, scope))

    def clear_cache(self) -> None:
        self.cache.clear()
