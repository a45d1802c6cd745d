from __future__ import annotations

import logging
from collections.abc import Awaitable, Mapping
from datetime import datetime
from typing import Any, TypeVar

from gamification_aggregates.cache.keys import make_cache_key
from gamification_aggregates.client.players import PlayerStatusClient
from gamification_aggregates.core.text import parse_number
from gamification_aggregates.query.types import DateWindow, Scope

from .base import DomainAggregator
from .models import PlayerStatus, PointWallet, SeasonProgress

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def to_player_status(raw: Mapping[str, Any]) -> PlayerStatus:
    level_progress = _mapping(raw.get("level_progress"))
    next_level = _mapping(level_progress.get("next_level"))
    extra = _mapping(raw.get("extra"))
    teams = raw.get("teams")
    team = _mapping(teams[0]) if isinstance(teams, list) and teams else {}

    # Extra fields win over the derived ones.
    metadata = {
        "area": extra.get("area") or team.get("area") or "",
        "time": team.get("name") or extra.get("time") or "",
        "squad": extra.get("squad") or team.get("squad") or "",
        **extra,
    }

    position = int(parse_number(next_level.get("position")))
    player_id = str(raw.get("_id") or "")
    return PlayerStatus(
        id=player_id,
        name=str(raw.get("name") or ""),
        # The backend uses the e-mail address as the player id.
        email=player_id,
        level=position,
        season_level=position,
        level_name=str(next_level.get("level") or ""),
        percent_completed=parse_number(level_progress.get("percent_completed")),
        metadata=metadata,
        created=_optional_int(raw.get("created")),
        updated=_optional_int(raw.get("updated")),
    )


def to_point_wallet(raw: Mapping[str, Any]) -> PointWallet:
    """`locked_points` are blocked, `points` unlocked and `coins` the coin balance."""
    categories = _mapping(raw.get("point_categories") or raw.get("pointCategories"))
    return PointWallet(
        bloqueados=parse_number(categories.get("locked_points"))
        or parse_number(categories.get("lockedPoints")),
        desbloqueados=parse_number(categories.get("points")),
        moedas=parse_number(categories.get("coins")),
    )


def to_season_progress(raw: Mapping[str, Any], window: DateWindow) -> SeasonProgress:
    return SeasonProgress(season_start=window.start, season_end=window.end)


class PlayerStatusAggregator(DomainAggregator):
    """A DomainAggregator that also reads the per-player status document."""

    def __init__(self, *, players: PlayerStatusClient, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.players = players

    async def _status(self, player_id: str) -> dict[str, Any]:
        # One status request feeds every view derived from it.
        key = make_cache_key("status", Scope.player(player_id))
        return await self._cached(key, lambda: self.players.get_status(player_id))


class PlayerService(PlayerStatusAggregator):
    """
    Player status, point wallet and season progress, all read from the status document.

    A failed refresh falls back to the last value this service produced for the same
    player; with nothing to fall back on, the error propagates.
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._last_known: dict[str, Any] = {}

    async def _with_fallback(self, key: str, compute: Awaitable[T]) -> T:
        try:
            value = await compute
        except Exception:
            fallback = self._last_known.get(key)
            if fallback is None:
                logger.exception("Refreshing %s failed", key)
                raise
            logger.warning("Refreshing %s failed; using last known value", key, exc_info=True)
            return fallback
        self._last_known[key] = value
        return value

    async def get_player_status(self, player_id: str) -> PlayerStatus:
        key = make_cache_key("player_status", Scope.player(player_id))

        async def compute() -> PlayerStatus:
            return await self._with_fallback(key, self._mapped(player_id, to_player_status))

        return await self._cached(key, compute)

    async def get_player_points(self, player_id: str) -> PointWallet:
        key = make_cache_key("player_points", Scope.player(player_id))

        async def compute() -> PointWallet:
            return await self._with_fallback(key, self._mapped(player_id, to_point_wallet))

        return await self._cached(key, compute)

    async def get_season_progress(
        self, player_id: str, season_start: datetime, season_end: datetime
    ) -> SeasonProgress:
        window = DateWindow(season_start, season_end)
        key = make_cache_key("season_progress", Scope.player(player_id), window)

        async def compute() -> SeasonProgress:
            return await self._with_fallback(
                key,
                self._mapped(player_id, lambda raw: to_season_progress(raw, window)),
            )

        return await self._cached(key, compute)

    async def _mapped(self, player_id: str, mapper) -> Any:
        return mapper(await self._status(player_id))

    def clear_player_cache(self, player_id: str) -> int:
        return self.invalidate_scope(Scope.player(player_id))
