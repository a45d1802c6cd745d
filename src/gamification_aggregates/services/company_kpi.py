from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from types import MappingProxyType
from typing import Any

from gamification_aggregates.cache.keys import make_cache_key
from gamification_aggregates.client.errors import DocumentNotFoundError
from gamification_aggregates.core.text import extract_cnpj_id
from gamification_aggregates.query.builder import (
    CNPJ_KPI_COLLECTION,
    COMPANY_PERFORMANCE_COLLECTION,
)
from gamification_aggregates.query.stages import Pipeline
from gamification_aggregates.query.types import QueryKind, Scope

from .base import DomainAggregator
from .models import CnpjKpiData, CompanyActivity, CompanyDisplay, KpiColor, KpiData

logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_TARGET = 100.0

_EMPTY_KPIS: Mapping[str, CnpjKpiData] = MappingProxyType({})


def kpi_color(current: float, target: float) -> KpiColor:
    """>= 80% of target is green, >= 50% yellow, anything else (or no target) red."""
    if target == 0:
        return KpiColor.RED

    percentage = (current / target) * 100
    if percentage >= 80:
        return KpiColor.GREEN
    if percentage >= 50:
        return KpiColor.YELLOW
    return KpiColor.RED


def map_to_kpi_data(kpi: CnpjKpiData, *, target: float = DEFAULT_DELIVERY_TARGET) -> KpiData:
    current = kpi.entrega
    percentage = min((current / target) * 100, 100.0) if target else 0.0
    return KpiData(
        id="delivery",
        label="Entregas",
        current=current,
        target=target,
        unit="entregas",
        percentage=percentage,
        color=kpi_color(current, target),
    )


def process_kpi_rows(rows: Iterable[Mapping[str, Any]]) -> Mapping[str, CnpjKpiData]:
    kpis: dict[str, CnpjKpiData] = {}
    for row in rows:
        cnpj_id = row.get("_id")
        if not cnpj_id:
            continue
        entrega = row.get("entrega")
        if isinstance(entrega, bool) or not isinstance(entrega, (int, float)):
            entrega = 0
        kpis[str(cnpj_id)] = CnpjKpiData(id=str(cnpj_id), entrega=entrega)
    return MappingProxyType(kpis)


class CompanyKpiService(DomainAggregator):
    """
    Company delivery KPIs and company documents.

    KPI lookups degrade to an empty mapping on failure. `get_company_details` is the
    exception: callers need to tell "missing" from "present", so its errors propagate
    (and are not cached).
    """

    async def get_kpi_data(self, cnpj_ids: Iterable[str]) -> Mapping[str, CnpjKpiData]:
        ids = [i for i in cnpj_ids if i]
        if not ids:
            return _EMPTY_KPIS

        scope = Scope.companies(ids)
        key = make_cache_key(QueryKind.KPI_LOOKUP, scope)

        async def compute() -> Mapping[str, CnpjKpiData]:
            pipeline = self.builder.build(QueryKind.KPI_LOOKUP, scope)
            return await self._graceful("get_kpi_data", self._kpis(pipeline), _EMPTY_KPIS)

        return await self._cached(key, compute)

    async def _kpis(self, pipeline: Pipeline) -> Mapping[str, CnpjKpiData]:
        rows = await self.executor.execute(CNPJ_KPI_COLLECTION, pipeline)
        return process_kpi_rows(rows)

    async def enrich_companies_with_kpis(
        self, companies: Sequence[CompanyActivity]
    ) -> list[CompanyDisplay]:
        """
        Attach a delivery KPI to each company whose CNPJ label carries a known id.
        Companies with an unparsable label or no KPI row are returned without one.
        """
        if not companies:
            return []

        with_ids = [(company, extract_cnpj_id(company.cnpj)) for company in companies]
        valid_ids = sorted({cnpj_id for _, cnpj_id in with_ids if cnpj_id is not None})
        logger.debug("Extracted %d CNPJ ids from %d companies", len(valid_ids), len(companies))

        kpis = await self.get_kpi_data(valid_ids) if valid_ids else _EMPTY_KPIS

        enriched: list[CompanyDisplay] = []
        for company, cnpj_id in with_ids:
            kpi = kpis.get(cnpj_id) if cnpj_id is not None else None
            enriched.append(
                CompanyDisplay(
                    cnpj=company.cnpj,
                    action_count=company.action_count,
                    cnpj_id=cnpj_id,
                    delivery_kpi=map_to_kpi_data(kpi) if kpi is not None else None,
                )
            )
        return enriched

    async def get_company_details(self, company_id: str) -> dict[str, Any]:
        """
        Raw company document from the performance collection.
        Raises DocumentNotFoundError when absent; backend errors propagate.
        """
        scope = Scope.companies([company_id])
        key = make_cache_key(QueryKind.DOCUMENT_LOOKUP, scope)

        async def compute() -> Mapping[str, Any]:
            pipeline = self.builder.build(QueryKind.DOCUMENT_LOOKUP, scope)
            rows = await self.executor.execute(COMPANY_PERFORMANCE_COLLECTION, pipeline)
            if not rows:
                raise DocumentNotFoundError(COMPANY_PERFORMANCE_COLLECTION, company_id)
            return MappingProxyType(rows[0])

        document = await self._cached(key, compute)
        return dict(document)

    def clear_company_cache(self, company_id: str) -> int:
        return self.invalidate_scope(Scope.companies([company_id]))
