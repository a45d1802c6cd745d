from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from gamification_aggregates.cache.keys import make_cache_key
from gamification_aggregates.query.builder import ACTION_LOG_COLLECTION
from gamification_aggregates.query.stages import Pipeline
from gamification_aggregates.query.types import QueryKind, QueryOptions, Scope

from .base import DomainAggregator
from .models import ActionLogEntry, ActivityMetrics, MacroMetrics, PlayerProgress

PENDING_STATUSES = frozenset({"pending", "pendente"})
IN_PROGRESS_STATUSES = frozenset({"in_progress", "em_execucao", "in-progress"})
COMPLETED_STATUSES = frozenset({"completed", "finalizado", "done"})


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def parse_action_log_entry(row: Mapping[str, Any]) -> ActionLogEntry | None:
    entry_id = row.get("_id")
    if entry_id is None:
        return None

    points = row.get("points")
    extra = row.get("extra")
    return ActionLogEntry(
        id=str(entry_id),
        player=str(row.get("player") or ""),
        action=str(row.get("action") or ""),
        action_title=row.get("action_title") if isinstance(row.get("action_title"), str) else None,
        status=row.get("status") if isinstance(row.get("status"), str) else None,
        points=points if isinstance(points, (int, float)) and not isinstance(points, bool) else 0,
        created=_optional_int(row.get("created")),
        updated=_optional_int(row.get("updated")),
        extra=dict(extra) if isinstance(extra, Mapping) else {},
    )


def _is_macro(entry: ActionLogEntry) -> bool:
    return bool(entry.extra.get("isMacro")) or "macro" in entry.action


def compute_player_progress(actions: Iterable[ActionLogEntry]) -> PlayerProgress:
    actions = list(actions)
    macros = [a for a in actions if _is_macro(a)]

    def count(items: list[ActionLogEntry], statuses: frozenset[str]) -> int:
        return sum(1 for a in items if a.status in statuses)

    return PlayerProgress(
        activity=ActivityMetrics(
            pendentes=count(actions, PENDING_STATUSES),
            em_execucao=count(actions, IN_PROGRESS_STATUSES),
            finalizadas=count(actions, COMPLETED_STATUSES),
            pontos=sum(a.points for a in actions),
        ),
        macro=MacroMetrics(
            pendentes=count(macros, PENDING_STATUSES),
            # Macro progress only recognizes the underscore spelling of "in progress".
            incompletas=count(macros, frozenset({"in_progress", "em_execucao"})),
            finalizadas=count(macros, frozenset({"completed", "finalizado"})),
        ),
    )


class ActionLogService(DomainAggregator):
    """Per-player action history and the progress buckets derived from it."""

    async def get_player_action_log(
        self, player_id: str, *, limit: int | None = None
    ) -> tuple[ActionLogEntry, ...]:
        """Most recent actions first (default: last 100)."""
        scope = Scope.player(player_id)
        options = QueryOptions(limit=limit)
        key = make_cache_key(QueryKind.PLAYER_ACTIONS, scope, None, str(limit or "default"))

        async def compute() -> tuple[ActionLogEntry, ...]:
            pipeline = self.builder.build(QueryKind.PLAYER_ACTIONS, scope, None, options)
            return await self._graceful("get_player_action_log", self._actions(pipeline), ())

        return await self._cached(key, compute)

    async def _actions(self, pipeline: Pipeline) -> tuple[ActionLogEntry, ...]:
        rows = await self.executor.execute(ACTION_LOG_COLLECTION, pipeline)
        entries = (parse_action_log_entry(row) for row in rows)
        return tuple(e for e in entries if e is not None)

    async def get_completed_tasks_count(self, player_id: str) -> int:
        actions = await self.get_player_action_log(player_id)
        return sum(1 for a in actions if a.status in COMPLETED_STATUSES)

    async def get_progress_metrics(self, player_id: str) -> PlayerProgress:
        scope = Scope.player(player_id)
        key = make_cache_key("progress_metrics", scope)

        async def compute() -> PlayerProgress:
            # The action log already degrades to an empty history, which yields zeros here.
            actions = await self.get_player_action_log(player_id)
            return compute_player_progress(actions)

        return await self._cached(key, compute)

    def clear_player_cache(self, player_id: str) -> int:
        return self.invalidate_scope(Scope.player(player_id))
