from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import IntEnum
from typing import Any, Union

Json = dict[str, Any]


class PipelineValidationError(ValueError):
    """A pipeline was assembled in a shape the aggregate endpoint must never receive."""


def iso_instant(dt: datetime) -> str:
    """Render an instant as UTC ISO-8601 with millisecond precision and a `Z` suffix."""

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    dt = dt.astimezone(UTC)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def date_literal(dt: datetime) -> Json:
    # The backend only recognizes instants wrapped as {"$date": "<iso>"}.
    return {"$date": iso_instant(dt)}


def to_wire(value: Any) -> Any:
    """Recursively convert stage payloads into JSON-ready values."""

    if isinstance(value, DateFilter):
        return value.to_wire()
    if isinstance(value, datetime):
        return date_literal(value)
    if isinstance(value, Mapping):
        return {str(k): to_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_wire(v) for v in value]
    return value


@dataclass(frozen=True)
class DateFilter:
    """Closed interval [gte, lte] over a timestamp field. Both bounds are always sent."""

    gte: datetime
    lte: datetime

    def __post_init__(self) -> None:
        if self.gte is None or self.lte is None:
            raise PipelineValidationError("DateFilter requires both gte and lte bounds")

    def to_wire(self) -> Json:
        return {"$gte": date_literal(self.gte), "$lte": date_literal(self.lte)}


class SortDirection(IntEnum):
    ASC = 1
    DESC = -1


@dataclass(frozen=True)
class Match:
    predicate: Mapping[str, Any]

    def __post_init__(self) -> None:
        object.__setattr__(self, "predicate", dict(self.predicate))

    def to_wire(self) -> Json:
        return {"$match": to_wire(self.predicate)}


@dataclass(frozen=True)
class Group:
    """`key` becomes `_id`; `None` groups every matched document into one row."""

    key: Any
    accumulators: Mapping[str, Any]

    def __post_init__(self) -> None:
        accumulators = dict(self.accumulators)
        if not accumulators:
            raise PipelineValidationError("Group stage needs at least one accumulator")
        if "_id" in accumulators:
            raise PipelineValidationError("Group accumulators must not redefine _id")
        object.__setattr__(self, "accumulators", accumulators)

    def to_wire(self) -> Json:
        return {"$group": {"_id": to_wire(self.key), **to_wire(self.accumulators)}}


@dataclass(frozen=True)
class Project:
    fields: Mapping[str, Any]

    def __post_init__(self) -> None:
        fields = dict(self.fields)
        if not fields:
            raise PipelineValidationError("Project stage needs at least one field")
        object.__setattr__(self, "fields", fields)

    def to_wire(self) -> Json:
        return {"$project": to_wire(self.fields)}


@dataclass(frozen=True)
class Sort:
    field: str
    direction: SortDirection = SortDirection.ASC

    def to_wire(self) -> Json:
        return {"$sort": {self.field: int(self.direction)}}


@dataclass(frozen=True)
class Limit:
    count: int

    def __post_init__(self) -> None:
        if self.count <= 0:
            raise PipelineValidationError(f"Limit must be positive, got {self.count}")

    def to_wire(self) -> Json:
        return {"$limit": self.count}


PipelineStage = Union[Match, Group, Project, Sort, Limit]


def validate_stages(stages: Sequence[PipelineStage]) -> None:
    seen_group = False
    for index, stage in enumerate(stages):
        if isinstance(stage, Group):
            seen_group = True
        elif isinstance(stage, Match):
            if seen_group:
                raise PipelineValidationError(
                    f"Match stage at position {index} follows a Group stage"
                )
        elif isinstance(stage, Limit):
            if index != len(stages) - 1:
                raise PipelineValidationError("Limit must be the final stage")
        elif not isinstance(stage, (Project, Sort)):
            raise PipelineValidationError(f"Unknown pipeline stage: {stage!r}")


@dataclass(frozen=True)
class Pipeline:
    stages: tuple[PipelineStage, ...]

    def __post_init__(self) -> None:
        stages = tuple(self.stages)
        validate_stages(stages)
        object.__setattr__(self, "stages", stages)

    @classmethod
    def of(cls, *stages: PipelineStage) -> Pipeline:
        return cls(stages=stages)

    def __iter__(self) -> Iterator[PipelineStage]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    def to_wire(self) -> list[Json]:
        return [stage.to_wire() for stage in self.stages]
