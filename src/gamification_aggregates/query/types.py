from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class QueryKind(StrEnum):
    POINTS = "points"
    PROGRESS = "progress"
    GRAPH = "graph"
    MEMBERS = "members"
    COLLABORATOR = "collaborator"
    PLAYER_ACTIONS = "player_actions"
    KPI_LOOKUP = "kpi_lookup"
    DOCUMENT_LOOKUP = "document_lookup"


class ScopeKind(StrEnum):
    TEAM = "team"
    PLAYER = "player"
    COMPANY = "company"
    COLLABORATOR = "collaborator"


class Granularity(StrEnum):
    DAY = "day"
    WEEK = "week"


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


@dataclass(frozen=True)
class DateWindow:
    """
    Closed time window [start, end].

    Naive datetimes are read as UTC. An end before the start is rejected rather than
    swapped: it almost always means the caller mixed up its arguments.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        start = _as_utc(self.start)
        end = _as_utc(self.end)
        if end < start:
            raise ValueError(f"DateWindow end {end.isoformat()} is before start {start.isoformat()}")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    def cache_token(self) -> str:
        # Epoch milliseconds keep keys short and independent of timezone rendering.
        return f"{int(self.start.timestamp() * 1000)}-{int(self.end.timestamp() * 1000)}"


@dataclass(frozen=True)
class Scope:
    """
    The filtering dimension of a query. `ids` is normalized (deduplicated + sorted) so
    that two scopes naming the same ids in any order compare and key identically.
    """

    kind: ScopeKind
    ids: tuple[str, ...]

    def __post_init__(self) -> None:
        ids = tuple(sorted({str(i) for i in self.ids}))
        if not ids:
            raise ValueError(f"Scope {self.kind} needs at least one id")
        object.__setattr__(self, "ids", ids)

    @classmethod
    def team(cls, team_id: str) -> Scope:
        return cls(kind=ScopeKind.TEAM, ids=(team_id,))

    @classmethod
    def player(cls, player_id: str) -> Scope:
        return cls(kind=ScopeKind.PLAYER, ids=(player_id,))

    @classmethod
    def collaborator(cls, user_id: str) -> Scope:
        return cls(kind=ScopeKind.COLLABORATOR, ids=(user_id,))

    @classmethod
    def companies(cls, company_ids: Iterable[str]) -> Scope:
        return cls(kind=ScopeKind.COMPANY, ids=tuple(company_ids))

    @property
    def single(self) -> str:
        if len(self.ids) != 1:
            raise ValueError(f"Scope {self.kind} has {len(self.ids)} ids, expected exactly one")
        return self.ids[0]

    def predicate_value(self) -> Any:
        """Equality for one id, `$in` for an id set."""
        if len(self.ids) == 1:
            return self.ids[0]
        return {"$in": list(self.ids)}

    def cache_token(self) -> str:
        return f"{self.kind.value}:{','.join(self.ids)}"


@dataclass(frozen=True)
class QueryOptions:
    granularity: Granularity = Granularity.DAY
    limit: int | None = None
