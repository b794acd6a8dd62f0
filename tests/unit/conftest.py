"""Shared fixtures for IMCache tests."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from imcache import IMCache, InMemoryBroker


class FakeClock:
    """Controllable millisecond clock."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> IMCache:
    """A cache with a fake clock and no default TTL."""
    return IMCache(clock=clock, default_ttl_ms=0)


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
async def remote_cache(clock: FakeClock, broker: InMemoryBroker) -> AsyncIterator[IMCache]:
    """A cache whose remote channels go through the in-memory broker."""
    cache = IMCache(clock=clock, default_ttl_ms=0, transport_factory=broker.transport)
    yield cache
    await cache.aclose()
