from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from gamification_aggregates.cache.keys import make_cache_key
from gamification_aggregates.query.builder import ACHIEVEMENT_COLLECTION, ACTION_LOG_COLLECTION
from gamification_aggregates.query.stages import Pipeline
from gamification_aggregates.query.types import DateWindow, Granularity, QueryKind, Scope

from .base import DomainAggregator
from .graph_data import build_series
from .models import ActionCount, Collaborator, GraphSeries, TeamProgressMetrics, TeamSeasonPoints

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]

LOCKED_FIELDS = ("blockedPoints", "locked")
UNLOCKED_FIELDS = ("unlockedPoints", "unlocked")
REPORTED_TOTAL_FIELDS = ("totalPoints", "total")

LOCKED_TAGS = frozenset({"locked_points", "locked"})
UNLOCKED_TAGS = frozenset({"unlocked_points", "unlocked"})

INCOMPLETE_PROCESS_ACTIONS = frozenset({"processo_incompleto", "incomplete_process"})
FINISHED_ACTIVITY_ACTIONS = frozenset({"atividade_finalizada", "completed_activity"})
FINISHED_PROCESS_ACTIONS = frozenset({"processo_finalizado", "completed_process"})


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    return 0


def _first_present(row: Row, fields: tuple[str, ...]) -> Any:
    for name in fields:
        if name in row:
            return row[name]
    return None


def process_points_aggregate(rows: Iterable[Row]) -> TeamSeasonPoints:
    """
    Collapse point rows into totals.

    Accepts grouped rows carrying the two parts as fields (`blockedPoints` /
    `unlockedPoints` from the points pipeline, or `locked` / `unlocked`) as well as
    per-item rows tagged `locked_points` / `unlocked_points` (or `locked` / `unlocked`).
    The grand total is always derived from the two parts; a reported `totalPoints` or
    `total` that disagrees is logged and ignored.
    """
    locked: float = 0
    unlocked: float = 0
    reported: float | None = None

    for row in rows:
        if any(name in row for name in LOCKED_FIELDS + UNLOCKED_FIELDS):
            locked += _number(_first_present(row, LOCKED_FIELDS))
            unlocked += _number(_first_present(row, UNLOCKED_FIELDS))
            total = _first_present(row, REPORTED_TOTAL_FIELDS)
            if total is not None:
                reported = (reported or 0) + _number(total)
            continue

        tag = row.get("item", row.get("_id"))
        if not isinstance(tag, str):
            continue
        amount = _number(row.get("total", row.get("totalPoints")))
        if tag in LOCKED_TAGS:
            locked += amount
        elif tag in UNLOCKED_TAGS:
            unlocked += amount

    points = TeamSeasonPoints.from_parts(bloqueados=locked, desbloqueados=unlocked)
    if reported is not None and reported != points.total:
        logger.warning(
            "Reported total=%s differs from locked+unlocked=%s; using the sum",
            reported,
            points.total,
        )
    return points


def process_progress_aggregate(rows: Iterable[Row]) -> TeamProgressMetrics:
    incompletos = 0
    atividades = 0
    finalizados = 0

    for row in rows:
        action_id = row.get("_id")
        count = int(_number(row.get("count")))
        if action_id in INCOMPLETE_PROCESS_ACTIONS:
            incompletos += count
        elif action_id in FINISHED_PROCESS_ACTIONS:
            finalizados += count
        elif action_id in FINISHED_ACTIVITY_ACTIONS:
            atividades += count
        else:
            # Unmapped actions count as finished activities.
            atividades += count

    return TeamProgressMetrics(
        processos_incompletos=incompletos,
        atividades_finalizadas=atividades,
        processos_finalizados=finalizados,
    )


def process_collaborator_list(rows: Iterable[Row]) -> tuple[Collaborator, ...]:
    members: list[Collaborator] = []
    for row in rows:
        user_id = row.get("_id")
        if not isinstance(user_id, str) or not user_id:
            continue
        # Only the id is known here; name/email are enriched by the player mapper.
        members.append(Collaborator(user_id=user_id, name=user_id, email=user_id))
    return tuple(members)


def process_action_counts(rows: Iterable[Row]) -> tuple[ActionCount, ...]:
    return tuple(
        ActionCount(action_id=str(row["_id"]), count=int(_number(row.get("count"))))
        for row in rows
        if row.get("_id") is not None
    )


class TeamAggregateService(DomainAggregator):
    """
    Team-level aggregates: season points, progress counts, members and activity graphs.

    Every operation degrades to an empty/zero result when the backend fails; that
    default is cached like any other result.
    """

    async def get_team_season_points(
        self, team_id: str, season_start: datetime, season_end: datetime
    ) -> TeamSeasonPoints:
        scope = Scope.team(team_id)
        window = DateWindow(season_start, season_end)
        key = make_cache_key(QueryKind.POINTS, scope, window)

        async def compute() -> TeamSeasonPoints:
            pipeline = self.builder.build(QueryKind.POINTS, scope, window)
            return await self._graceful(
                "get_team_season_points",
                self._points(pipeline),
                TeamSeasonPoints(),
            )

        return await self._cached(key, compute)

    async def _points(self, pipeline: Pipeline) -> TeamSeasonPoints:
        rows = await self.executor.execute(ACHIEVEMENT_COLLECTION, pipeline)
        return process_points_aggregate(rows)

    async def get_team_progress_metrics(
        self, team_id: str, season_start: datetime, season_end: datetime
    ) -> TeamProgressMetrics:
        scope = Scope.team(team_id)
        window = DateWindow(season_start, season_end)
        key = make_cache_key(QueryKind.PROGRESS, scope, window)

        async def compute() -> TeamProgressMetrics:
            pipeline = self.builder.build(QueryKind.PROGRESS, scope, window)
            return await self._graceful(
                "get_team_progress_metrics",
                self._progress(pipeline),
                TeamProgressMetrics(),
            )

        return await self._cached(key, compute)

    async def _progress(self, pipeline: Pipeline) -> TeamProgressMetrics:
        rows = await self.executor.execute(ACTION_LOG_COLLECTION, pipeline)
        return process_progress_aggregate(rows)

    async def get_team_members(self, team_id: str) -> tuple[Collaborator, ...]:
        scope = Scope.team(team_id)
        key = make_cache_key(QueryKind.MEMBERS, scope)

        async def compute() -> tuple[Collaborator, ...]:
            pipeline = self.builder.build(QueryKind.MEMBERS, scope)
            return await self._graceful("get_team_members", self._members(pipeline), ())

        return await self._cached(key, compute)

    async def _members(self, pipeline: Pipeline) -> tuple[Collaborator, ...]:
        # Large teams can exceed one response; page through the whole list.
        rows = await self.executor.execute_paginated(
            ACTION_LOG_COLLECTION, pipeline, batch_size=self.batch_size
        )
        return process_collaborator_list(rows)

    async def get_collaborator_data(
        self, user_id: str, start: datetime, end: datetime
    ) -> tuple[ActionCount, ...]:
        """Action counts for one collaborator, used to narrow team views to a single person."""
        scope = Scope.collaborator(user_id)
        window = DateWindow(start, end)
        key = make_cache_key(QueryKind.COLLABORATOR, scope, window)

        async def compute() -> tuple[ActionCount, ...]:
            pipeline = self.builder.build(QueryKind.COLLABORATOR, scope, window)
            return await self._graceful(
                "get_collaborator_data", self._action_counts(pipeline), ()
            )

        return await self._cached(key, compute)

    async def _action_counts(self, pipeline: Pipeline) -> tuple[ActionCount, ...]:
        rows = await self.executor.execute(ACTION_LOG_COLLECTION, pipeline)
        return process_action_counts(rows)

    async def get_team_graph_data(
        self,
        team_id: str,
        start: datetime,
        end: datetime,
        granularity: Granularity = Granularity.DAY,
    ) -> tuple[GraphSeries, ...]:
        scope = Scope.team(team_id)
        window = DateWindow(start, end)
        granularity = Granularity(granularity)
        key = make_cache_key(QueryKind.GRAPH, scope, window, granularity.value)

        async def compute() -> tuple[GraphSeries, ...]:
            pipeline = self.builder.build_graph_query(team_id, window, granularity)
            return await self._graceful(
                "get_team_graph_data", self._graph(pipeline, window, granularity), ()
            )

        return await self._cached(key, compute)

    async def _graph(
        self, pipeline: Pipeline, window: DateWindow, granularity: Granularity
    ) -> tuple[GraphSeries, ...]:
        rows = await self.executor.execute_paginated(
            ACTION_LOG_COLLECTION, pipeline, batch_size=self.batch_size
        )
        return tuple(build_series(rows, window, granularity))

    def clear_team_cache(self, team_id: str) -> int:
        """Drop every cached aggregate for one team; other teams are untouched."""
        return self.invalidate_scope(Scope.team(team_id))
