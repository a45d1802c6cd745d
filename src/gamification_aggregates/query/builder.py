from __future__ import annotations

from collections.abc import Callable
from typing import Literal

from .stages import DateFilter, Group, Limit, Match, Pipeline, Project, Sort, SortDirection
from .types import DateWindow, Granularity, QueryKind, QueryOptions, Scope, ScopeKind

ACHIEVEMENT_COLLECTION = "achievement"
ACTION_LOG_COLLECTION = "action_log"
CNPJ_KPI_COLLECTION = "cnpj__c"
COMPANY_PERFORMANCE_COLLECTION = "cnpj_performance__c"

# Collections each query kind runs against. Document lookups name their own collection.
DEFAULT_COLLECTIONS: dict[QueryKind, str] = {
    QueryKind.POINTS: ACHIEVEMENT_COLLECTION,
    QueryKind.PROGRESS: ACTION_LOG_COLLECTION,
    QueryKind.GRAPH: ACTION_LOG_COLLECTION,
    QueryKind.MEMBERS: ACTION_LOG_COLLECTION,
    QueryKind.COLLABORATOR: ACTION_LOG_COLLECTION,
    QueryKind.PLAYER_ACTIONS: ACTION_LOG_COLLECTION,
    QueryKind.KPI_LOOKUP: CNPJ_KPI_COLLECTION,
    QueryKind.DOCUMENT_LOOKUP: COMPANY_PERFORMANCE_COLLECTION,
}

DEFAULT_PLAYER_ACTIONS_LIMIT = 100
DEFAULT_COMPANY_LIST_LIMIT = 100

# $dateToString tokens, one per supported granularity.
DATE_FORMATS: dict[Granularity, str] = {
    Granularity.DAY: "%Y-%m-%d",
    Granularity.WEEK: "%Y-%U",
}

RelativeDateType = Literal[
    "currentMonthStart",
    "currentMonthEnd",
    "previousMonthStart",
    "previousMonthEnd",
    "today",
]

_RELATIVE_EXPRESSIONS: dict[str, str] = {
    "currentMonthStart": "-0M-",
    "currentMonthEnd": "-0M+",
    "previousMonthStart": "-1M-",
    "previousMonthEnd": "-1M+",
    "today": "-0d+",
}


def _require_scope(scope: Scope, *kinds: ScopeKind) -> None:
    if scope.kind not in kinds:
        allowed = ", ".join(k.value for k in kinds)
        raise ValueError(f"Expected a {allowed} scope, got {scope.kind.value}")


def _require_window(window: DateWindow | None, kind: QueryKind) -> DateWindow:
    if window is None:
        raise ValueError(f"{kind.value} queries need a date window")
    return window


def _time_filter(window: DateWindow) -> DateFilter:
    return DateFilter(gte=window.start, lte=window.end)


def _count() -> dict[str, object]:
    return {"count": {"$sum": 1}}


def _sum_when_item(item: str) -> dict[str, object]:
    return {"$sum": {"$cond": [{"$eq": ["$item", item]}, "$total", 0]}}


class AggregateQueryBuilder:
    """
    Pure construction of aggregate pipelines.

    Identical arguments always yield structurally identical pipelines (same stage order,
    same field names). The scope predicate always leads the first Match stage, and every
    time-bounded query carries both window bounds.
    """

    def __init__(self) -> None:
        self._builders: dict[
            QueryKind, Callable[[Scope, DateWindow | None, QueryOptions], Pipeline]
        ] = {
            QueryKind.POINTS: self._points,
            QueryKind.PROGRESS: self._progress,
            QueryKind.GRAPH: self._graph,
            QueryKind.MEMBERS: self._members,
            QueryKind.COLLABORATOR: self._collaborator,
            QueryKind.PLAYER_ACTIONS: self._player_actions,
            QueryKind.KPI_LOOKUP: self._kpi_lookup,
            QueryKind.DOCUMENT_LOOKUP: self._document_lookup,
        }

    def build(
        self,
        kind: QueryKind,
        scope: Scope,
        window: DateWindow | None = None,
        options: QueryOptions | None = None,
    ) -> Pipeline:
        return self._builders[QueryKind(kind)](scope, window, options or QueryOptions())

    # -----------------------------
    # Team queries
    # -----------------------------

    def build_points_query(self, team_id: str, window: DateWindow) -> Pipeline:
        """Sum total, blocked (`locked_points`) and unlocked points for a team."""
        return self.build(QueryKind.POINTS, Scope.team(team_id), window)

    def build_progress_query(self, team_id: str, window: DateWindow) -> Pipeline:
        return self.build(QueryKind.PROGRESS, Scope.team(team_id), window)

    def build_graph_query(
        self,
        team_id: str,
        window: DateWindow,
        granularity: Granularity = Granularity.DAY,
    ) -> Pipeline:
        return self.build(
            QueryKind.GRAPH,
            Scope.team(team_id),
            window,
            QueryOptions(granularity=Granularity(granularity)),
        )

    def build_members_query(self, team_id: str) -> Pipeline:
        return self.build(QueryKind.MEMBERS, Scope.team(team_id))

    def _points(self, scope: Scope, window: DateWindow | None, options: QueryOptions) -> Pipeline:
        _require_scope(scope, ScopeKind.TEAM)
        window = _require_window(window, QueryKind.POINTS)
        return Pipeline.of(
            Match(
                {
                    "extra.team": scope.predicate_value(),
                    "time": _time_filter(window),
                    "type": 0,  # points only
                }
            ),
            Group(
                key=None,
                accumulators={
                    "totalPoints": {"$sum": "$total"},
                    "blockedPoints": _sum_when_item("locked_points"),
                    "unlockedPoints": _sum_when_item("unlocked_points"),
                },
            ),
        )

    def _progress(self, scope: Scope, window: DateWindow | None, options: QueryOptions) -> Pipeline:
        _require_scope(scope, ScopeKind.TEAM)
        window = _require_window(window, QueryKind.PROGRESS)
        return Pipeline.of(
            Match({"attributes.team": scope.predicate_value(), "time": _time_filter(window)}),
            Group(key="$actionId", accumulators=_count()),
        )

    def _graph(self, scope: Scope, window: DateWindow | None, options: QueryOptions) -> Pipeline:
        _require_scope(scope, ScopeKind.TEAM)
        window = _require_window(window, QueryKind.GRAPH)
        date_format = DATE_FORMATS[options.granularity]
        return Pipeline.of(
            Match({"attributes.team": scope.predicate_value(), "time": _time_filter(window)}),
            Project(
                {
                    "date": {"$dateToString": {"format": date_format, "date": {"$toDate": "$time"}}},
                    "actionId": 1,
                }
            ),
            Group(key={"date": "$date", "actionId": "$actionId"}, accumulators=_count()),
            Sort("_id.date", SortDirection.ASC),
        )

    def _members(self, scope: Scope, window: DateWindow | None, options: QueryOptions) -> Pipeline:
        _require_scope(scope, ScopeKind.TEAM)
        return Pipeline.of(
            Match({"attributes.team": scope.predicate_value()}),
            Group(key="$userId", accumulators=_count()),
            Sort("_id", SortDirection.ASC),
        )

    # -----------------------------
    # Player / collaborator queries
    # -----------------------------

    def _collaborator(
        self, scope: Scope, window: DateWindow | None, options: QueryOptions
    ) -> Pipeline:
        _require_scope(scope, ScopeKind.COLLABORATOR)
        window = _require_window(window, QueryKind.COLLABORATOR)
        return Pipeline.of(
            Match({"userId": scope.predicate_value(), "time": _time_filter(window)}),
            Group(key="$actionId", accumulators=_count()),
        )

    def _player_actions(
        self, scope: Scope, window: DateWindow | None, options: QueryOptions
    ) -> Pipeline:
        _require_scope(scope, ScopeKind.PLAYER)
        predicate: dict[str, object] = {"player": scope.predicate_value()}
        if window is not None:
            predicate["time"] = _time_filter(window)
        return Pipeline.of(
            Match(predicate),
            Sort("created", SortDirection.DESC),
            Limit(options.limit or DEFAULT_PLAYER_ACTIONS_LIMIT),
        )

    # -----------------------------
    # Company / document queries
    # -----------------------------

    def _kpi_lookup(self, scope: Scope, window: DateWindow | None, options: QueryOptions) -> Pipeline:
        _require_scope(scope, ScopeKind.COMPANY)
        # Always $in, even for one id, so the request shape does not depend on set size.
        return Pipeline.of(Match({"_id": {"$in": list(scope.ids)}}))

    def _document_lookup(
        self, scope: Scope, window: DateWindow | None, options: QueryOptions
    ) -> Pipeline:
        return Pipeline.of(Match({"_id": scope.single}), Limit(1))

    def build_company_list_query(self, limit: int = DEFAULT_COMPANY_LIST_LIMIT) -> Pipeline:
        """Every company performance document, sorted by name. Not scoped to a player."""
        return Pipeline.of(Sort("name", SortDirection.ASC), Limit(limit))


def relative_date_expression(kind: RelativeDateType) -> str:
    """
    Backend relative date expression, e.g. "-0M-" for the start of the current month.
    Unknown kinds fall back to the current month start.
    """
    return _RELATIVE_EXPRESSIONS.get(kind, "-0M-")


def days_ago_expression(days: int) -> str:
    if days < 0:
        raise ValueError(f"days must be >= 0, got {days}")
    return f"-{days}d-"
