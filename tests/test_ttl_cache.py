from __future__ import annotations

import asyncio

import pytest

from gamification_aggregates.cache.keys import key_mentions_scope, make_cache_key, scope_prefix
from gamification_aggregates.cache.ttl_cache import TTLCache
from gamification_aggregates.query.types import DateWindow, Scope


def _counting(value: object, gate: asyncio.Event | None = None):
    calls: list[int] = []

    async def compute() -> object:
        calls.append(1)
        if gate is not None:
            await gate.wait()
        return value

    return compute, calls


@pytest.mark.asyncio
async def test_concurrent_identical_requests_share_one_computation(cache: TTLCache) -> None:
    gate = asyncio.Event()
    compute, calls = _counting(42, gate)

    handles = [cache.get_or_compute("team=A|points", compute) for _ in range(10)]
    assert all(h is handles[0] for h in handles)

    gate.set()
    results = await asyncio.gather(*handles)

    assert results == [42] * 10
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_ttl_boundary(cache: TTLCache, clock) -> None:
    compute, calls = _counting("v")

    await cache.get_or_compute("k", compute)

    clock.advance(300.0 - 0.001)
    await cache.get_or_compute("k", compute)
    assert len(calls) == 1

    clock.advance(0.002)
    await cache.get_or_compute("k", compute)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_expired_entry_is_dropped_on_lookup(cache: TTLCache, clock) -> None:
    compute, _ = _counting("v")
    await cache.get_or_compute("k", compute)

    clock.advance(301.0)
    assert cache.get("k") is None
    assert "k" not in cache


@pytest.mark.asyncio
async def test_per_entry_ttl_overrides_cache_default(cache: TTLCache, clock) -> None:
    compute, calls = _counting("v")
    await cache.get_or_compute("player", compute, ttl_s=180.0)

    clock.advance(200.0)
    await cache.get_or_compute("player", compute, ttl_s=180.0)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_invalidation_mid_flight_keeps_old_holders_and_recomputes_for_new(
    cache: TTLCache,
) -> None:
    gate = asyncio.Event()
    compute, calls = _counting("fresh", gate)

    first = cache.get_or_compute("team=A|points", compute)
    assert cache.invalidate_by_prefix("team=A|") == 1

    second = cache.get_or_compute("team=A|points", compute)
    assert second is not first

    gate.set()
    assert await first == "fresh"
    assert await second == "fresh"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_failed_computation_is_not_cached(cache: TTLCache) -> None:
    async def boom() -> None:
        raise RuntimeError("backend down")

    with pytest.raises(RuntimeError):
        await cache.get_or_compute("k", boom)
    await asyncio.sleep(0)

    assert "k" not in cache


@pytest.mark.asyncio
async def test_invalidate_prefix_only_touches_matching_scope(cache: TTLCache) -> None:
    compute, _ = _counting(1)
    for key in ("team=A|points", "team=A|members", "team=AB|points", "player=A|player_actions"):
        await cache.get_or_compute(key, compute)

    assert cache.invalidate_by_prefix("team=A|") == 2
    assert "team=AB|points" in cache
    assert "player=A|player_actions" in cache

    assert cache.invalidate("team=AB|points") is True
    assert cache.invalidate("team=AB|points") is False

    cache.clear()
    assert len(cache) == 0


def test_cache_key_ignores_id_order_and_includes_window() -> None:
    from datetime import UTC, datetime

    window = DateWindow(datetime(2024, 1, 1, tzinfo=UTC), datetime(2024, 1, 31, tzinfo=UTC))

    a = make_cache_key("kpi_lookup", Scope.companies(["b", "a"]))
    b = make_cache_key("kpi_lookup", Scope.companies(["a", "b"]))
    assert a == b

    k1 = make_cache_key("points", Scope.team("Team A"), window)
    assert k1.startswith(scope_prefix(Scope.team("Team A")))
    assert k1 != make_cache_key("points", Scope.team("Team A"))
    assert k1 != make_cache_key("progress", Scope.team("Team A"), window)


def test_cache_key_separators_are_escaped() -> None:
    tricky = make_cache_key("members", Scope.team("A|B"))
    plain = make_cache_key("members", Scope.team("A"))
    assert not tricky.startswith(scope_prefix(Scope.team("A")))
    assert plain.startswith(scope_prefix(Scope.team("A")))


def test_multi_id_keys_are_reachable_from_each_id() -> None:
    kpis = make_cache_key("kpi_lookup", Scope.companies(["1", "2"]))
    details = make_cache_key("document_lookup", Scope.companies(["2"]))
    tricky = make_cache_key("kpi_lookup", Scope.companies(["1,2"]))

    assert key_mentions_scope(kpis, Scope.companies(["2"]))
    assert key_mentions_scope(details, Scope.companies(["2"]))
    assert not key_mentions_scope(kpis, Scope.companies(["3"]))
    assert not key_mentions_scope(kpis, Scope.team("2"))
    assert not key_mentions_scope(tricky, Scope.companies(["2"]))


@pytest.mark.asyncio
async def test_invalidate_where(cache: TTLCache) -> None:
    compute, _ = _counting(1)
    for key in ("company=1,2|kpi_lookup", "company=2|document_lookup", "company=3|kpi_lookup"):
        await cache.get_or_compute(key, compute)

    assert cache.invalidate_where(lambda key: key_mentions_scope(key, Scope.companies(["2"]))) == 2
    assert len(cache) == 1
    assert "company=3|kpi_lookup" in cache
