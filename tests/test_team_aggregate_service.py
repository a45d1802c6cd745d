from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime

import httpx
import pytest
from fakes import FakeExecutor

from gamification_aggregates.cache.ttl_cache import TTLCache
from gamification_aggregates.client.errors import BackendRequestError
from gamification_aggregates.client.executor import PipelineExecutor
from gamification_aggregates.client.http import build_http_client
from gamification_aggregates.query.types import Granularity
from gamification_aggregates.services.models import (
    ActionCount,
    Collaborator,
    TeamProgressMetrics,
    TeamSeasonPoints,
)
from gamification_aggregates.services.team_aggregate import (
    TeamAggregateService,
    process_points_aggregate,
)

START = datetime(2024, 1, 1, tzinfo=UTC)
END = datetime(2024, 1, 31, 23, 59, 59, tzinfo=UTC)


def _service(executor, cache: TTLCache) -> TeamAggregateService:
    return TeamAggregateService(executor=executor, cache=cache, ttl_s=300.0)


@pytest.mark.asyncio
async def test_season_points_are_mapped_and_cached(cache: TTLCache, clock) -> None:
    executor = FakeExecutor(
        [{"_id": None, "totalPoints": 1000, "blockedPoints": 600, "unlockedPoints": 400}]
    )
    service = _service(executor, cache)

    points = await service.get_team_season_points("Team A", START, END)
    assert points == TeamSeasonPoints(total=1000, bloqueados=600, desbloqueados=400)

    clock.advance(4 * 60)
    again = await service.get_team_season_points("Team A", START, END)

    assert again == points
    assert len(executor.calls) == 1
    assert executor.calls[0][0] == "achievement"


@pytest.mark.asyncio
async def test_concurrent_callers_trigger_one_backend_call(cache: TTLCache) -> None:
    executor = FakeExecutor([{"_id": "processo_finalizado", "count": 2}])
    service = _service(executor, cache)

    results = await asyncio.gather(
        *(service.get_team_progress_metrics("Team A", START, END) for _ in range(5))
    )

    assert len(executor.calls) == 1
    assert all(r == TeamProgressMetrics(processos_finalizados=2) for r in results)


@pytest.mark.asyncio
async def test_backend_failure_degrades_to_zero_and_expires_normally(
    cache: TTLCache, clock
) -> None:
    executor = FakeExecutor(error=BackendRequestError("HTTP 503", status_code=503))
    service = _service(executor, cache)

    points = await service.get_team_season_points("Team A", START, END)
    assert points == TeamSeasonPoints(total=0, bloqueados=0, desbloqueados=0)

    await service.get_team_season_points("Team A", START, END)
    assert len(executor.calls) == 1

    clock.advance(301.0)
    executor.error = None
    executor.rows = [{"_id": None, "totalPoints": 10, "blockedPoints": 4, "unlockedPoints": 6}]
    recovered = await service.get_team_season_points("Team A", START, END)

    assert recovered.total == 10
    assert len(executor.calls) == 2


def test_points_total_is_always_locked_plus_unlocked() -> None:
    rows = [
        {"item": "locked_points", "total": 120},
        {"item": "unlocked_points", "total": 30},
        {"item": "locked_points", "total": 5.5},
        {"item": "bonus", "total": 1000},
    ]
    points = process_points_aggregate(rows)
    assert points.bloqueados == 125.5
    assert points.desbloqueados == 30
    assert points.total == points.bloqueados + points.desbloqueados


def test_points_override_inconsistent_reported_total(caplog: pytest.LogCaptureFixture) -> None:
    rows = [{"_id": None, "totalPoints": 999, "blockedPoints": 600, "unlockedPoints": 300}]
    points = process_points_aggregate(rows)

    assert points.total == 900
    assert "differs from locked+unlocked" in caplog.text


def test_points_empty_rows_are_zero() -> None:
    assert process_points_aggregate([]) == TeamSeasonPoints()


@pytest.mark.asyncio
async def test_grouped_locked_unlocked_row_is_mapped_and_cached(cache: TTLCache, clock) -> None:
    executor = FakeExecutor([{"total": 1000, "locked": 600, "unlocked": 400}])
    service = _service(executor, cache)

    points = await service.get_team_season_points("Team A", START, END)
    clock.advance(5 * 60 - 1)
    again = await service.get_team_season_points("Team A", START, END)

    assert points == TeamSeasonPoints(total=1000, bloqueados=600, desbloqueados=400)
    assert again == points
    assert len(executor.calls) == 1


def test_points_accept_plain_locked_unlocked_tags() -> None:
    rows = [
        {"_id": "locked", "total": 70},
        {"_id": "unlocked", "total": 30},
        {"_id": {"nested": "key"}, "total": 500},
    ]
    assert process_points_aggregate(rows) == TeamSeasonPoints(
        total=100, bloqueados=70, desbloqueados=30
    )


@pytest.mark.asyncio
async def test_unexpected_executor_error_degrades_to_zero(
    cache: TTLCache, caplog: pytest.LogCaptureFixture
) -> None:
    executor = FakeExecutor(error=RuntimeError("Network error"))

    points = await _service(executor, cache).get_team_season_points("Team A", START, END)

    assert points == TeamSeasonPoints(total=0, bloqueados=0, desbloqueados=0)
    assert "get_team_season_points failed" in caplog.text


@pytest.mark.asyncio
async def test_progress_metrics_classify_action_ids(cache: TTLCache) -> None:
    executor = FakeExecutor(
        [
            {"_id": "processo_incompleto", "count": 3},
            {"_id": "incomplete_process", "count": 1},
            {"_id": "completed_activity", "count": 4},
            {"_id": "completed_process", "count": 2},
            {"_id": "something_else", "count": 5},
        ]
    )
    metrics = await _service(executor, cache).get_team_progress_metrics("Team A", START, END)

    assert metrics == TeamProgressMetrics(
        processos_incompletos=4, atividades_finalizadas=9, processos_finalizados=2
    )


@pytest.mark.asyncio
async def test_members_and_collaborator_data(cache: TTLCache) -> None:
    executor = FakeExecutor([{"_id": "ana@example.com", "count": 7}, {"_id": None, "count": 1}])
    service = _service(executor, cache)

    members = await service.get_team_members("Team A")
    assert members == (
        Collaborator(user_id="ana@example.com", name="ana@example.com", email="ana@example.com"),
    )

    counts = await service.get_collaborator_data("ana@example.com", START, END)
    assert counts == (ActionCount(action_id="ana@example.com", count=7),)


@pytest.mark.asyncio
async def test_graph_data_is_zero_filled_per_action(cache: TTLCache) -> None:
    executor = FakeExecutor(
        [
            {"_id": {"date": "2024-01-01", "actionId": "completed_tasks"}, "count": 2},
            {"_id": {"date": "2024-01-03", "actionId": "completed_tasks"}, "count": 1},
        ]
    )
    series = await _service(executor, cache).get_team_graph_data(
        "Team A", START, datetime(2024, 1, 3, tzinfo=UTC), Granularity.DAY
    )

    assert len(series) == 1
    assert series[0].label == "Completed Tasks"
    assert [p.value for p in series[0].points] == [2, 0, 1]


@pytest.mark.asyncio
async def test_clear_team_cache_only_drops_that_team(cache: TTLCache) -> None:
    executor = FakeExecutor([])
    service = _service(executor, cache)

    await service.get_team_members("Team A")
    await service.get_team_members("Team B")
    assert service.clear_team_cache("Team A") == 1

    await service.get_team_members("Team A")
    await service.get_team_members("Team B")
    assert len(executor.calls) == 3


@pytest.mark.asyncio
async def test_inverted_window_propagates(cache: TTLCache) -> None:
    service = _service(FakeExecutor([]), cache)
    with pytest.raises(ValueError):
        await service.get_team_season_points("Team A", END, START)


@pytest.mark.asyncio
async def test_points_end_to_end_over_http(cache: TTLCache) -> None:
    bodies: list[object] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v3/database/achievement/aggregate"
        assert request.headers["Authorization"] == "Basic dG9rZW4="
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"result": [{"_id": None, "totalPoints": 1000, "blockedPoints": 600, "unlockedPoints": 400}]},
        )

    http = build_http_client(
        base_url="https://backend.test",
        token="dG9rZW4=",
        transport=httpx.MockTransport(handler),
    )
    service = _service(PipelineExecutor(http=http), cache)
    try:
        points = await service.get_team_season_points("Team A", START, END)
    finally:
        await http.aclose()

    assert points == TeamSeasonPoints(total=1000, bloqueados=600, desbloqueados=400)
    match = bodies[0][0]["$match"]
    assert match["extra.team"] == "Team A"
    assert match["time"]["$gte"] == {"$date": "2024-01-01T00:00:00.000Z"}
    assert match["time"]["$lte"] == {"$date": "2024-01-31T23:59:59.000Z"}
