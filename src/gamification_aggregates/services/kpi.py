from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from typing import Any

from gamification_aggregates.cache.keys import make_cache_key
from gamification_aggregates.core.text import parse_number
from gamification_aggregates.query.builder import COMPANY_PERFORMANCE_COLLECTION
from gamification_aggregates.query.types import QueryKind, Scope

from .company_kpi import kpi_color
from .models import KpiData
from .player import PlayerStatusAggregator

logger = logging.getLogger(__name__)

NUMBERED_KPI_TARGET = 10.0

# (field, label, target, unit); only consulted when no kpi1..kpi3 fields exist.
NAMED_KPIS: tuple[tuple[str, str, float, str], ...] = (
    ("nps", "NPS", 10.0, "pontos"),
    ("multas", "Multas", 0.0, "multas"),
    ("eficiencia", "Eficiência", 10.0, "pontos"),
    ("prazo", "Prazo", 10.0, "pontos"),
)


def kpi_progress(current: float, target: float) -> int:
    """Completion percentage rounded half up; 0 without a target."""
    if target == 0:
        return 0
    return math.floor((current / target) * 100 + 0.5)


def _first_number(*values: Any, default: float = 0) -> float:
    for value in values:
        number = parse_number(value)
        if number:
            return number
    return default


def _kpi(kpi_id: str, label: str, current: float, target: float, unit: str) -> KpiData:
    return KpiData(
        id=kpi_id,
        label=label,
        current=current,
        target=target,
        unit=unit,
        percentage=kpi_progress(current, target),
        color=kpi_color(current, target),
    )


def to_kpi_data(raw: Mapping[str, Any], default_label: str = "KPI") -> KpiData:
    return _kpi(
        str(raw.get("_id") or raw.get("id") or ""),
        str(raw.get("label") or raw.get("name") or default_label),
        _first_number(raw.get("current"), raw.get("value")),
        _first_number(raw.get("target"), raw.get("goal")),
        str(raw.get("unit") or ""),
    )


def _numbered_kpi(raw: Mapping[str, Any], n: int) -> KpiData | None:
    keys = (f"kpi{n}", f"kpi_{n}")
    if not any(k in raw for k in keys):
        return None

    data = raw.get(keys[0]) or raw.get(keys[1])
    if isinstance(data, Mapping):
        return _kpi(
            f"kpi{n}",
            str(data.get("label") or f"KPI {n}"),
            _first_number(data.get("current"), data.get("value")),
            _first_number(data.get("target"), default=NUMBERED_KPI_TARGET),
            str(data.get("unit") or ""),
        )
    return _kpi(f"kpi{n}", f"KPI {n}", parse_number(data), NUMBERED_KPI_TARGET, "")


def to_kpi_data_array(raw: Any) -> list[KpiData]:
    """
    KPIs from either a list of KPI records or a company performance document.

    Documents are read as numbered fields (`kpi1`..`kpi3`), then as named fields
    (nps, multas, eficiencia, prazo). A document with neither yields three empty KPIs.
    """
    if isinstance(raw, list):
        return [
            to_kpi_data(item, f"KPI {i + 1}")
            for i, item in enumerate(raw)
            if isinstance(item, Mapping)
        ]
    if not isinstance(raw, Mapping):
        return []

    kpis = [kpi for kpi in (_numbered_kpi(raw, n) for n in (1, 2, 3)) if kpi is not None]

    if not kpis:
        kpis = [
            _kpi(name, label, parse_number(raw.get(name)), target, unit)
            for name, label, target, unit in NAMED_KPIS
            if name in raw
        ]

    if not kpis:
        kpis = [_kpi(f"kpi{n}", f"KPI {n}", 0, NUMBERED_KPI_TARGET, "") for n in (1, 2, 3)]

    return kpis


class KpiService(PlayerStatusAggregator):
    """
    Player KPIs (from the status document's `extra.kpi`) and per-company KPIs.
    Backend errors propagate; a missing KPI source is an empty result.
    """

    async def get_player_kpis(self, player_id: str) -> tuple[KpiData, ...]:
        scope = Scope.player(player_id)
        key = make_cache_key("player_kpis", scope)

        async def compute() -> tuple[KpiData, ...]:
            status = await self._status(player_id)
            extra = status.get("extra")
            raw = extra.get("kpi") if isinstance(extra, Mapping) else None
            if not raw:
                logger.warning("No KPI data in player status for %s", player_id)
                return ()
            return tuple(to_kpi_data_array(raw))

        return await self._cached(key, compute)

    async def get_company_kpis(self, company_id: str) -> tuple[KpiData, ...]:
        scope = Scope.companies([company_id])
        key = make_cache_key("company_kpis", scope)

        async def compute() -> tuple[KpiData, ...]:
            pipeline = self.builder.build(QueryKind.DOCUMENT_LOOKUP, scope)
            rows = await self.executor.execute(COMPANY_PERFORMANCE_COLLECTION, pipeline)
            if not rows:
                logger.warning("No KPI document for company %s", company_id)
                return ()
            return tuple(to_kpi_data_array(rows[0]))

        return await self._cached(key, compute)
