from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import date, timedelta
from typing import Any

from gamification_aggregates.core.text import format_action_label
from gamification_aggregates.query.types import DateWindow, Granularity

from .models import GraphDataPoint, GraphSeries

_day_key_re = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def bucket_key(day: date, granularity: Granularity) -> str:
    # Same tokens the graph pipeline asks $dateToString for (%U: Sunday-first weeks).
    if granularity is Granularity.WEEK:
        return day.strftime("%Y-%U")
    return day.strftime("%Y-%m-%d")


def _row_date(row: Mapping[str, Any]) -> str | None:
    group_id = row.get("_id")
    if isinstance(group_id, Mapping):
        value = group_id.get("date")
    else:
        value = group_id or row.get("date")
    if not isinstance(value, str) or not value:
        return None
    # Full ISO timestamps collapse to their day.
    if len(value) > 10 and _day_key_re.match(value[:10]):
        return value[:10]
    return value


def _row_count(row: Mapping[str, Any]) -> int:
    count = row.get("count")
    return int(count) if isinstance(count, (int, float)) else 0


def group_by_date(rows: Iterable[Mapping[str, Any]]) -> dict[str, int]:
    """Sum counts per date bucket across every action id."""

    grouped: dict[str, int] = {}
    for row in rows:
        key = _row_date(row)
        if key is None:
            continue
        grouped[key] = grouped.get(key, 0) + _row_count(row)
    return grouped


def group_by_action(rows: Iterable[Mapping[str, Any]]) -> dict[str, dict[str, int]]:
    by_action: dict[str, dict[str, int]] = {}
    for row in rows:
        key = _row_date(row)
        if key is None:
            continue
        group_id = row.get("_id")
        action_id = "default"
        if isinstance(group_id, Mapping) and group_id.get("actionId"):
            action_id = str(group_id["actionId"])
        dates = by_action.setdefault(action_id, {})
        dates[key] = dates.get(key, 0) + _row_count(row)
    return by_action


def fill_missing_dates(
    data: Mapping[str, int],
    window: DateWindow,
    granularity: Granularity = Granularity.DAY,
) -> list[GraphDataPoint]:
    """
    One point per bucket in the window, zero where the backend had no rows.
    Week buckets are dated by their first day inside the window.
    """
    points: list[GraphDataPoint] = []
    seen: set[str] = set()
    current = window.start.date()
    end = window.end.date()
    while current <= end:
        key = bucket_key(current, granularity)
        if key not in seen:
            seen.add(key)
            points.append(GraphDataPoint(date=current, value=data.get(key, 0)))
        current += timedelta(days=1)
    return points


def build_series(
    rows: Iterable[Mapping[str, Any]],
    window: DateWindow,
    granularity: Granularity = Granularity.DAY,
) -> list[GraphSeries]:
    """One zero-filled series per action id, in first-seen order."""

    return [
        GraphSeries(
            action_id=action_id,
            label=format_action_label(action_id),
            points=tuple(fill_missing_dates(dates, window, granularity)),
        )
        for action_id, dates in group_by_action(rows).items()
    ]
