from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from gamification_aggregates.cache.keys import key_operation, make_cache_key
from gamification_aggregates.core.text import parse_number
from gamification_aggregates.query.builder import COMPANY_PERFORMANCE_COLLECTION
from gamification_aggregates.query.types import Scope

from .base import DomainAggregator
from .kpi import to_kpi_data_array
from .models import Company, CompanyFilter, KpiData

logger = logging.getLogger(__name__)

COMPANY_LIST_OPERATION = "companies"


def _health_from_kpis(company: Mapping[str, Any], kpis: Sequence[KpiData]) -> float:
    health = parse_number(company.get("healthScore")) or parse_number(company.get("health"))
    if health or not kpis:
        return health
    percentages = [(k.current / k.target) * 100 if k.target > 0 else 0 for k in kpis]
    return math.floor(sum(percentages) / len(percentages) + 0.5)


def to_company(raw: Mapping[str, Any]) -> Company:
    """Company from a performance document; health defaults to the average KPI completion."""
    kpis = tuple(to_kpi_data_array(raw))
    doc_id = raw.get("_id") or raw.get("cnpj") or ""
    return Company(
        id=str(raw.get("_id") or raw.get("id") or raw.get("cnpj") or ""),
        name=str(raw.get("name") or f"CNPJ {doc_id}"),
        cnpj=str(raw.get("cnpj") or raw.get("_id") or ""),
        health_score=_health_from_kpis(raw, kpis),
        kpis=kpis,
    )


def filter_companies(companies: Iterable[Company], company_filter: CompanyFilter) -> list[Company]:
    selected = list(companies)
    if company_filter.search:
        needle = company_filter.search.lower()
        selected = [
            c for c in selected if needle in c.name.lower() or company_filter.search in c.cnpj
        ]
    if company_filter.min_health is not None:
        selected = [c for c in selected if c.health_score >= company_filter.min_health]
    return selected


class CompanyService(DomainAggregator):
    """Company listings from the performance collection. Backend errors propagate."""

    async def get_companies(
        self, player_id: str, company_filter: CompanyFilter | None = None
    ) -> tuple[Company, ...]:
        company_filter = company_filter or CompanyFilter()
        key = make_cache_key(
            COMPANY_LIST_OPERATION, Scope.player(player_id), None, company_filter.cache_token()
        )

        async def compute() -> tuple[Company, ...]:
            pipeline = self.builder.build_company_list_query()
            rows = await self.executor.execute(COMPANY_PERFORMANCE_COLLECTION, pipeline)
            if not rows:
                logger.warning("No companies in %s", COMPANY_PERFORMANCE_COLLECTION)
            companies = [to_company(row) for row in rows]
            return tuple(filter_companies(companies, company_filter))

        return await self._cached(key, compute)

    def clear_company_lists(self) -> int:
        """Listings are not keyed by company, so any of them may hold a changed company."""
        return self.cache.invalidate_where(
            lambda key: key_operation(key) == COMPANY_LIST_OPERATION
        )
