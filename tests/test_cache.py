"""TTLCache tests."""

from __future__ import annotations

import asyncio

import pytest

from kryten_rewards.cache import TTLCache

from tests.conftest import FakeMonotonic


@pytest.fixture
def ticker() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def ttl_cache(ticker: FakeMonotonic) -> TTLCache:
    return TTLCache(ttl_seconds=300, clock=ticker)


class CountingLoader:
    def __init__(self, value="v", delay: float = 0) -> None:
        self.calls = 0
        self.value = value
        self.delay = delay

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return f"{self.value}{self.calls}"


class TestTTLCache:

    async def test_reads_within_ttl_load_once(self, ttl_cache: TTLCache, ticker: FakeMonotonic):
        loader = CountingLoader()
        assert await ttl_cache.get_with_cache("k", loader) == "v1"
        ticker.advance(299)
        assert await ttl_cache.get_with_cache("k", loader) == "v1"
        assert loader.calls == 1

    async def test_reload_after_ttl(self, ttl_cache: TTLCache, ticker: FakeMonotonic):
        loader = CountingLoader()
        await ttl_cache.get_with_cache("k", loader)
        ticker.advance(300)
        assert await ttl_cache.get_with_cache("k", loader) == "v2"
        assert loader.calls == 2

    async def test_reload_after_invalidate(self, ttl_cache: TTLCache):
        loader = CountingLoader()
        await ttl_cache.get_with_cache("k", loader)
        assert ttl_cache.invalidate("k") is True
        assert ttl_cache.invalidate("k") is False
        await ttl_cache.get_with_cache("k", loader)
        assert loader.calls == 2

    async def test_invalidate_prefix(self, ttl_cache: TTLCache):
        ttl_cache.set("settings:earnings", 1)
        ttl_cache.set("settings:app", 2)
        ttl_cache.set("tasks:active", 3)
        assert ttl_cache.invalidate_prefix("settings:") == 2
        assert len(ttl_cache) == 1

    async def test_single_flight(self, ttl_cache: TTLCache):
        loader = CountingLoader(delay=0.01)
        values = await asyncio.gather(*(ttl_cache.get_with_cache("k", loader) for _ in range(5)))
        assert values == ["v1"] * 5
        assert loader.calls == 1

    async def test_loader_error_not_cached(self, ttl_cache: TTLCache):
        async def failing():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await ttl_cache.get_with_cache("k", failing)
        assert len(ttl_cache) == 0
        assert await ttl_cache.get_with_cache("k", CountingLoader()) == "v1"

    async def test_sweep_expired(self, ttl_cache: TTLCache, ticker: FakeMonotonic):
        ttl_cache.set("old", 1)
        ticker.advance(200)
        ttl_cache.set("new", 2)
        ticker.advance(150)
        assert ttl_cache.sweep_expired() == 1
        assert len(ttl_cache) == 1


class GatedLoader(CountingLoader):
    """Blocks the first load until ``release`` is called."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        if self.calls == 1:
            self.started.set()
            await self.gate.wait()
        return f"{self.value}{self.calls}"


class TestInvalidationDuringLoad:

    @pytest.mark.parametrize("invalidate", [
        lambda c: c.invalidate("settings:app"),
        lambda c: c.invalidate_prefix("settings:"),
        lambda c: c.clear(),
    ])
    async def test_inflight_value_not_stored(self, ttl_cache: TTLCache, invalidate):
        loader = GatedLoader()
        pending = asyncio.create_task(ttl_cache.get_with_cache("settings:app", loader))
        await loader.started.wait()

        invalidate(ttl_cache)
        loader.gate.set()
        assert await pending == "v1"
        assert len(ttl_cache) == 0

        assert await ttl_cache.get_with_cache("settings:app", loader) == "v2"
        assert loader.calls == 2

    async def test_unrelated_invalidation_keeps_load(self, ttl_cache: TTLCache):
        loader = GatedLoader()
        pending = asyncio.create_task(ttl_cache.get_with_cache("settings:app", loader))
        await loader.started.wait()

        ttl_cache.invalidate("tasks:active")
        loader.gate.set()
        await pending
        assert await ttl_cache.get_with_cache("settings:app", loader) == "v1"
        assert loader.calls == 1
