from __future__ import annotations

import dataclasses
import json
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

import httpx

from gamification_aggregates.cache.ttl_cache import TTLCache
from gamification_aggregates.client.executor import PipelineExecutor
from gamification_aggregates.client.http import build_http_client
from gamification_aggregates.client.players import PlayerStatusClient
from gamification_aggregates.core.config import Settings, settings
from gamification_aggregates.services.action_log import ActionLogService
from gamification_aggregates.services.company import CompanyService
from gamification_aggregates.services.company_kpi import CompanyKpiService
from gamification_aggregates.services.kpi import KpiService
from gamification_aggregates.services.player import PlayerService
from gamification_aggregates.services.team_aggregate import TeamAggregateService


@dataclass(frozen=True)
class Services:
    cache: TTLCache
    executor: PipelineExecutor
    teams: TeamAggregateService
    actions: ActionLogService
    companies: CompanyKpiService
    company_lists: CompanyService
    players: PlayerService
    kpis: KpiService


@asynccontextmanager
async def services_scope(
    cfg: Settings = settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[Services]:
    """
    Wire one HTTP client, one executor and one shared cache into every service.
    Ensures the HTTP client is closed on exit.
    """
    http = build_http_client(
        base_url=cfg.backend_base_url,
        token=cfg.require_backend_basic_token(),
        timeout_s=cfg.http_timeout_s,
        connect_timeout_s=cfg.http_connect_timeout_s,
        max_attempts=cfg.http_max_attempts,
        retry_delay_s=cfg.http_retry_delay_s,
        transport=transport,
    )
    executor = PipelineExecutor(
        http=http,
        slow_query_threshold_ms=cfg.slow_query_threshold_ms,
        batch_delay_s=cfg.aggregate_batch_delay_s,
    )
    players = PlayerStatusClient(http=http)
    cache = TTLCache(ttl_s=cfg.team_cache_ttl_s)
    try:
        yield Services(
            cache=cache,
            executor=executor,
            teams=TeamAggregateService(
                executor=executor,
                cache=cache,
                ttl_s=cfg.team_cache_ttl_s,
                batch_size=cfg.aggregate_batch_size,
            ),
            actions=ActionLogService(
                executor=executor, cache=cache, ttl_s=cfg.player_cache_ttl_s
            ),
            companies=CompanyKpiService(
                executor=executor, cache=cache, ttl_s=cfg.company_cache_ttl_s
            ),
            company_lists=CompanyService(
                executor=executor, cache=cache, ttl_s=cfg.company_cache_ttl_s
            ),
            players=PlayerService(
                executor=executor,
                cache=cache,
                ttl_s=cfg.player_status_cache_ttl_s,
                players=players,
            ),
            kpis=KpiService(
                executor=executor, cache=cache, ttl_s=cfg.kpi_cache_ttl_s, players=players
            ),
        )
    finally:
        await http.aclose()


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def dumps(value: Any) -> str:
    return json.dumps(_jsonable(value), indent=2, ensure_ascii=False)
