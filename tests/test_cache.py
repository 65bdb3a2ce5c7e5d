from __future__ import annotations

import asyncio

import pytest

from actions_gateway.cache import CacheEntry, MemoryCacheBackend, StaleWhileRevalidateCache
from actions_gateway.config import CacheConfig

CFG = CacheConfig(fresh_ttl_ms=1000, stale_window_ms=5000)


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingFetch:
    def __init__(self, delay: float = 0.0, fail: bool = False) -> None:
        self.calls = 0
        self.delay = delay
        self.fail = fail

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("upstream down")
        return {"version": self.calls}


def _cache(clock: FakeClock) -> StaleWhileRevalidateCache:
    return StaleWhileRevalidateCache([MemoryCacheBackend(clock=clock)], timeout_seconds=1.0, clock=clock)


@pytest.mark.asyncio
async def test_miss_fetches_and_stores() -> None:
    clock = FakeClock()
    cache = _cache(clock)
    fetch = CountingFetch()

    assert await cache.get("demo", "q", fetch, CFG) == {"version": 1}
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_fresh_entry_never_fetches() -> None:
    clock = FakeClock()
    cache = _cache(clock)
    fetch = CountingFetch()
    await cache.get("demo", "q", fetch, CFG)

    clock.now += 0.999
    for _ in range(5):
        assert await cache.get("demo", "q", fetch, CFG) == {"version": 1}
    await cache.wait_idle()
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_stale_entry_served_with_single_background_refresh() -> None:
    clock = FakeClock()
    cache = _cache(clock)
    await cache.get("demo", "q", CountingFetch(), CFG)

    clock.now += 2.0
    refresh = CountingFetch(delay=0.05)
    results = await asyncio.gather(*(cache.get("demo", "q", refresh, CFG) for _ in range(10)))

    assert all(r == {"version": 1} for r in results)
    assert cache.in_flight("demo", "q")
    await cache.wait_idle()
    assert refresh.calls == 1
    assert not cache.in_flight("demo", "q")


@pytest.mark.asyncio
async def test_refreshed_value_replaces_stale_one() -> None:
    clock = FakeClock()
    cache = _cache(clock)
    await cache.get("demo", "q", CountingFetch(), CFG)

    clock.now += 2.0
    refresh = CountingFetch()
    refresh.calls = 41
    assert await cache.get("demo", "q", refresh, CFG) == {"version": 1}
    await cache.wait_idle()
    assert await cache.get("demo", "q", refresh, CFG) == {"version": 42}


@pytest.mark.asyncio
async def test_expired_entry_blocks_on_fetch() -> None:
    clock = FakeClock()
    cache = _cache(clock)
    await cache.get("demo", "q", CountingFetch(), CFG)

    clock.now += 5.0
    fetch = CountingFetch()
    fetch.calls = 9
    assert await cache.get("demo", "q", fetch, CFG) == {"version": 10}


@pytest.mark.asyncio
async def test_concurrent_misses_share_one_fetch() -> None:
    cache = _cache(FakeClock())
    fetch = CountingFetch(delay=0.05)

    results = await asyncio.gather(*(cache.get("demo", "q", fetch, CFG) for _ in range(8)))

    assert fetch.calls == 1
    assert all(r == {"version": 1} for r in results)


@pytest.mark.asyncio
async def test_background_refresh_failure_keeps_stale_value() -> None:
    clock = FakeClock()
    cache = _cache(clock)
    await cache.get("demo", "q", CountingFetch(), CFG)

    clock.now += 2.0
    failing = CountingFetch(fail=True)
    assert await cache.get("demo", "q", failing, CFG) == {"version": 1}
    await cache.wait_idle()
    assert failing.calls == 1
    assert await cache.get("demo", "q", failing, CFG) == {"version": 1}
    await cache.wait_idle()


@pytest.mark.asyncio
async def test_foreground_fetch_failure_propagates() -> None:
    cache = _cache(FakeClock())
    with pytest.raises(RuntimeError):
        await cache.get("demo", "q", CountingFetch(fail=True), CFG)
    assert not cache.in_flight("demo", "q")


@pytest.mark.asyncio
async def test_entries_are_tenant_scoped() -> None:
    cache = _cache(FakeClock())
    fetch = CountingFetch()
    await cache.get("demo", "q", fetch, CFG)
    await cache.get("acme", "q", fetch, CFG)
    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_memory_backend_drops_entries_after_ttl() -> None:
    clock = FakeClock()
    backend = MemoryCacheBackend(clock=clock)
    await backend.set("k", CacheEntry(payload=1, timestamp=clock.now), ttl_seconds=5)
    clock.now += 4.9
    assert (await backend.get("k")).payload == 1
    clock.now += 0.2
    assert await backend.get("k") is None


@pytest.mark.asyncio
async def test_memory_backend_prunes_expired_entries_on_write() -> None:
    clock = FakeClock()
    backend = MemoryCacheBackend(clock=clock)
    for n in range(1000):
        await backend.set(f"q{n}", CacheEntry(payload=n, timestamp=clock.now), ttl_seconds=0.02)
    clock.now += 3600
    await backend.set("fresh", CacheEntry(payload="x", timestamp=clock.now), ttl_seconds=5)
    assert len(backend) == 1


@pytest.mark.asyncio
async def test_memory_backend_evicts_oldest_when_full() -> None:
    clock = FakeClock()
    backend = MemoryCacheBackend(clock=clock, max_entries=3)
    for key in ("a", "b", "c"):
        await backend.set(key, CacheEntry(payload=key, timestamp=clock.now), ttl_seconds=60)
    # rewriting "a" makes "b" the oldest
    await backend.set("a", CacheEntry(payload="a2", timestamp=clock.now), ttl_seconds=60)
    await backend.set("d", CacheEntry(payload="d", timestamp=clock.now), ttl_seconds=60)

    assert len(backend) == 3
    assert await backend.get("b") is None
    assert (await backend.get("a")).payload == "a2"
    assert (await backend.get("d")).payload == "d"
