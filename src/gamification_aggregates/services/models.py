from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum
from typing import Any


@dataclass(frozen=True)
class TeamSeasonPoints:
    """Point totals for a team. `total` always equals `bloqueados + desbloqueados`."""

    total: float = 0
    bloqueados: float = 0
    desbloqueados: float = 0

    @classmethod
    def from_parts(cls, *, bloqueados: float, desbloqueados: float) -> TeamSeasonPoints:
        return cls(
            total=bloqueados + desbloqueados,
            bloqueados=bloqueados,
            desbloqueados=desbloqueados,
        )


@dataclass(frozen=True)
class TeamProgressMetrics:
    processos_incompletos: int = 0
    atividades_finalizadas: int = 0
    processos_finalizados: int = 0


@dataclass(frozen=True)
class Collaborator:
    user_id: str
    name: str
    email: str


@dataclass(frozen=True)
class ActionCount:
    action_id: str
    count: int


@dataclass(frozen=True)
class GraphDataPoint:
    date: date
    value: int


@dataclass(frozen=True)
class GraphSeries:
    action_id: str
    label: str
    points: tuple[GraphDataPoint, ...]


@dataclass(frozen=True)
class ActionLogEntry:
    id: str
    player: str
    action: str
    action_title: str | None = None
    status: str | None = None
    points: float = 0
    created: int | None = None
    updated: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActivityMetrics:
    pendentes: int = 0
    em_execucao: int = 0
    finalizadas: int = 0
    pontos: float = 0


@dataclass(frozen=True)
class MacroMetrics:
    pendentes: int = 0
    incompletas: int = 0
    finalizadas: int = 0


@dataclass(frozen=True)
class PlayerProgress:
    activity: ActivityMetrics = field(default_factory=ActivityMetrics)
    macro: MacroMetrics = field(default_factory=MacroMetrics)


class KpiColor(StrEnum):
    RED = "red"
    YELLOW = "yellow"
    GREEN = "green"


@dataclass(frozen=True)
class CnpjKpiData:
    id: str
    entrega: float = 0


@dataclass(frozen=True)
class KpiData:
    id: str
    label: str
    current: float
    target: float
    unit: str
    percentage: float
    color: KpiColor


@dataclass(frozen=True)
class CompanyActivity:
    cnpj: str
    action_count: int


@dataclass(frozen=True)
class CompanyDisplay:
    cnpj: str
    action_count: int
    cnpj_id: str | None = None
    delivery_kpi: KpiData | None = None


@dataclass(frozen=True)
class PlayerStatus:
    id: str
    name: str
    email: str
    level: int = 0
    season_level: int = 0
    level_name: str = ""
    percent_completed: float = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    created: int | None = None
    updated: int | None = None


@dataclass(frozen=True)
class PointWallet:
    bloqueados: float = 0
    desbloqueados: float = 0
    moedas: float = 0


@dataclass(frozen=True)
class GoalProgress:
    current: float = 0
    target: float = 0


@dataclass(frozen=True)
class SeasonProgress:
    """
    Season summary for one player. Only the window comes from the status document; the
    counters are filled in by callers from the action log and KPI targets.
    """

    season_start: datetime
    season_end: datetime
    metas: GoalProgress = field(default_factory=GoalProgress)
    clientes: int = 0
    tarefas_finalizadas: int = 0


@dataclass(frozen=True)
class CompanyFilter:
    search: str | None = None
    min_health: float | None = None

    def cache_token(self) -> str:
        min_health = "" if self.min_health is None else self.min_health
        return f"search={self.search or ''};min_health={min_health}"


@dataclass(frozen=True)
class Company:
    id: str
    name: str
    cnpj: str
    health_score: float
    kpis: tuple[KpiData, ...] = ()
