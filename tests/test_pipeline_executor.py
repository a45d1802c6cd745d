from __future__ import annotations

import json
import logging
from typing import Any

import httpx
import pytest

from gamification_aggregates.client.executor import PipelineExecutor, normalize_rows
from gamification_aggregates.client.http import BaseHttpClient
from gamification_aggregates.query.stages import Group, Match, Pipeline

PIPELINE = Pipeline.of(
    Match({"attributes.team": "Team A"}),
    Group(key="$userId", accumulators={"count": {"$sum": 1}}),
)


def _executor(handler, **kwargs: Any) -> PipelineExecutor:
    http = BaseHttpClient(
        base_url="https://backend.test",
        transport=httpx.MockTransport(handler),
        max_attempts=1,
    )
    return PipelineExecutor(http=http, **kwargs)


@pytest.mark.asyncio
async def test_execute_posts_stage_array_to_collection_endpoint() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"_id": "ana", "count": 3}])

    rows = await _executor(handler).execute("action_log", PIPELINE)

    assert rows == [{"_id": "ana", "count": 3}]
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v3/database/action_log/aggregate"
    assert request.url.params["strict"] == "true"
    assert json.loads(request.content) == PIPELINE.to_wire()


@pytest.mark.asyncio
async def test_execute_unwraps_result_envelope() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"result": [{"_id": None, "totalPoints": 5}]})

    rows = await _executor(handler).execute("achievement", PIPELINE)
    assert rows == [{"_id": None, "totalPoints": 5}]


@pytest.mark.asyncio
async def test_unexpected_shape_is_empty_and_logged(caplog: pytest.LogCaptureFixture) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"message": "nope"})

    with caplog.at_level(logging.WARNING, logger="gamification_aggregates.client.executor"):
        rows = await _executor(handler).execute("achievement", PIPELINE)

    assert rows == []
    assert "Unexpected aggregate response format" in caplog.text


def test_normalize_rows_drops_non_object_items() -> None:
    assert normalize_rows([{"a": 1}, 3, "x"], collection="c") == [{"a": 1}]
    assert normalize_rows(None, collection="c") == []


@pytest.mark.asyncio
async def test_slow_query_is_logged_but_returned(caplog: pytest.LogCaptureFixture) -> None:
    ticks = iter([10.0, 12.5])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"_id": "x"}])

    executor = _executor(handler, _monotonic=lambda: next(ticks))
    with caplog.at_level(logging.WARNING, logger="gamification_aggregates.client.executor"):
        rows = await executor.execute("action_log", PIPELINE)

    assert rows == [{"_id": "x"}]
    assert "Slow aggregate query on action_log: 2500.00ms" in caplog.text


def _paged_backend(total_rows: int, *, fail_from: int | None = None):
    requests: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        header = request.headers["Range"]
        requests.append(header)
        start, count = (int(p) for p in header.removeprefix("items=").split("-"))
        if fail_from is not None and start >= fail_from:
            return httpx.Response(500)
        rows = [{"_id": f"user{i}"} for i in range(start, min(start + count, total_rows))]
        return httpx.Response(200, json=rows)

    return handler, requests


@pytest.mark.asyncio
async def test_pagination_stops_on_short_batch() -> None:
    handler, requests = _paged_backend(2 * 3 + 2)

    rows = await _executor(handler).execute_paginated("action_log", PIPELINE, batch_size=3)

    assert len(rows) == 8
    assert requests == ["items=0-3", "items=3-3", "items=6-3"]


@pytest.mark.asyncio
async def test_pagination_stops_on_empty_batch() -> None:
    handler, requests = _paged_backend(6)

    rows = await _executor(handler).execute_paginated("action_log", PIPELINE, batch_size=3)

    assert len(rows) == 6
    assert len(requests) == 3


@pytest.mark.asyncio
async def test_pagination_failure_returns_accumulated_rows() -> None:
    handler, requests = _paged_backend(100, fail_from=6)

    rows = await _executor(handler).execute_paginated("action_log", PIPELINE, batch_size=3)

    assert [r["_id"] for r in rows] == [f"user{i}" for i in range(6)]
    assert len(requests) == 3


@pytest.mark.asyncio
async def test_pagination_pauses_between_batches() -> None:
    handler, _ = _paged_backend(5)
    pauses: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        pauses.append(seconds)

    executor = _executor(handler, batch_delay_s=0.25, _sleep=fake_sleep)
    rows = await executor.execute_paginated("action_log", PIPELINE, batch_size=2)

    assert len(rows) == 5
    assert pauses == [0.25, 0.25]


@pytest.mark.asyncio
async def test_pagination_respects_max_batches() -> None:
    handler, requests = _paged_backend(100)

    rows = await _executor(handler).execute_paginated(
        "action_log", PIPELINE, batch_size=10, max_batches=2
    )

    assert len(rows) == 20
    assert len(requests) == 2


@pytest.mark.parametrize(
    "failure",
    [httpx.DecodingError("corrupt gzip body"), RuntimeError("connection pool exhausted")],
    ids=["decoding-error", "unexpected-error"],
)
@pytest.mark.asyncio
async def test_pagination_keeps_first_page_when_second_page_raises(
    failure: Exception, caplog: pytest.LogCaptureFixture
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers["Range"] == "items=0-2":
            return httpx.Response(200, json=[{"_id": "user0"}, {"_id": "user1"}])
        raise failure

    with caplog.at_level(logging.WARNING, logger="gamification_aggregates.client.executor"):
        rows = await _executor(handler).execute_paginated("action_log", PIPELINE, batch_size=2)

    assert rows == [{"_id": "user0"}, {"_id": "user1"}]
    assert "stopped at item 2 after 1 batches" in caplog.text
