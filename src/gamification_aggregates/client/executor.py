from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from gamification_aggregates.query.stages import Pipeline

from .http import BaseHttpClient

logger = logging.getLogger(__name__)

Row = dict[str, Any]


def aggregate_path(collection: str) -> str:
    return f"/v3/database/{collection}/aggregate"


def range_header(start: int, count: int) -> dict[str, str]:
    return {"Range": f"items={start}-{count}"}


def normalize_rows(payload: Any, *, collection: str) -> list[Row]:
    """
    Accept either a bare JSON array or an object with a `result` array.
    Anything else is logged and treated as zero rows.
    """
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict) and isinstance(payload.get("result"), list):
        items = payload["result"]
    else:
        logger.warning(
            "Unexpected aggregate response format from %s: %r", collection, type(payload)
        )
        return []

    return [item for item in items if isinstance(item, dict)]


@dataclass
class PipelineExecutor:
    """
    Runs aggregate pipelines against the backend.

    Latency of every call is measured; anything slower than `slow_query_threshold_ms`
    is reported as a warning but otherwise returned as usual.
    """

    http: BaseHttpClient
    slow_query_threshold_ms: float = 1000.0
    batch_delay_s: float = 0.0

    _monotonic: Callable[[], float] = field(default=time.monotonic, repr=False)
    _sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    async def _post(
        self,
        collection: str,
        pipeline: Pipeline,
        *,
        headers: dict[str, str] | None = None,
    ) -> list[Row]:
        body = pipeline.to_wire()
        logger.debug("Executing aggregate on %s: %s", collection, body)

        started = float(self._monotonic())
        try:
            payload = await self.http.post_json_value(
                aggregate_path(collection),
                body,
                params={"strict": "true"},
                headers=headers,
            )
        finally:
            elapsed_ms = (float(self._monotonic()) - started) * 1000.0
            if elapsed_ms > self.slow_query_threshold_ms:
                logger.warning("Slow aggregate query on %s: %.2fms", collection, elapsed_ms)

        return normalize_rows(payload, collection=collection)

    async def execute(self, collection: str, pipeline: Pipeline) -> list[Row]:
        """Single request. Transport errors propagate to the caller."""
        return await self._post(collection, pipeline)

    async def execute_paginated(
        self,
        collection: str,
        pipeline: Pipeline,
        *,
        batch_size: int = 100,
        max_batches: int | None = None,
    ) -> list[Row]:
        """
        Fetch every row in `batch_size` windows using the Range header.

        Stops on a short or empty batch. A failure part-way through returns the rows
        accumulated so far instead of raising.
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        rows: list[Row] = []
        batches = 0
        while True:
            if batches and self.batch_delay_s > 0:
                await self._sleep(self.batch_delay_s)

            start = batches * batch_size
            try:
                batch = await self._post(
                    collection, pipeline, headers=range_header(start, batch_size)
                )
            except Exception as e:
                logger.warning(
                    "Aggregate pagination on %s stopped at item %d after %d batches: %s",
                    collection,
                    start,
                    batches,
                    e,
                )
                return rows

            batches += 1
            rows.extend(batch)

            if len(batch) < batch_size:
                break
            if max_batches is not None and batches >= max_batches:
                logger.warning(
                    "Aggregate pagination on %s hit max_batches=%d with more rows pending",
                    collection,
                    max_batches,
                )
                break

        return rows
