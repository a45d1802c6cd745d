from __future__ import annotations

import pytest
from fakes import FakeClock

from gamification_aggregates.cache.ttl_cache import TTLCache


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> TTLCache:
    return TTLCache(ttl_s=300.0, clock=clock)
