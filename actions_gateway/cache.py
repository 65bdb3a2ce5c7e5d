"""
Stale-while-revalidate cache for read-class tools.

    age <  fresh_ttl              -> cached value, no fetch
    fresh_ttl <= age < stale_win  -> cached value, one background refresh
    otherwise                     -> caller waits for a fetch

At most one fetch per cache key is in flight at any time; concurrent misses
and stale reads for the same key share it.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

from .config import CacheConfig
from .storage import RankedBackends

logger = logging.getLogger("actions_gateway.cache")

Fetch = Callable[[], Awaitable[Any]]

DEFAULT_MAX_ENTRIES = 10_000


@dataclass(frozen=True)
class CacheEntry:
    payload: Any
    timestamp: float


class MemoryCacheBackend:
    """In-process tier. Expired entries are pruned on write; the oldest entry goes when full."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._clock = clock
        self._max_entries = max(1, int(max_entries))
        self._entries: Dict[str, Tuple[CacheEntry, float]] = {}

    def prune(self) -> int:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    async def get(self, key: str) -> Optional[CacheEntry]:
        item = self._entries.get(key)
        if item is None:
            return None
        entry, expires_at = item
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return entry

    async def set(self, key: str, entry: CacheEntry, ttl_seconds: float) -> None:
        self.prune()
        # re-insert so dict order stays oldest-write first
        self._entries.pop(key, None)
        while len(self._entries) >= self._max_entries:
            del self._entries[next(iter(self._entries))]
        self._entries[key] = (entry, self._clock() + ttl_seconds)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend:
    name = "redis"

    def __init__(self, client: Any) -> None:
        self._client = client

    async def get(self, key: str) -> Optional[CacheEntry]:
        raw = await self._client.get(key)
        if not raw:
            return None
        data = json.loads(raw)
        return CacheEntry(payload=data["payload"], timestamp=float(data["ts"]))

    async def set(self, key: str, entry: CacheEntry, ttl_seconds: float) -> None:
        raw = json.dumps({"payload": entry.payload, "ts": entry.timestamp}, ensure_ascii=False)
        await self._client.set(key, raw, ex=max(1, math.ceil(ttl_seconds)))


class StaleWhileRevalidateCache:
    def __init__(
        self,
        backends: Sequence[Any],
        timeout_seconds: float = 0.25,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._chain: RankedBackends[Any] = RankedBackends(backends, timeout_seconds, "cache")
        self._clock = clock
        self._inflight: Dict[str, asyncio.Task] = {}

    @staticmethod
    def cache_key(tenant_id: str, key: str) -> str:
        return f"t:{tenant_id}:{key}"

    def in_flight(self, tenant_id: str, key: str) -> bool:
        return self.cache_key(tenant_id, key) in self._inflight

    async def get(self, tenant_id: str, key: str, fetch: Fetch, config: Optional[CacheConfig] = None) -> Any:
        cfg = config or CacheConfig()
        cache_key = self.cache_key(tenant_id, key)
        entry = await self._chain.first_hit(lambda b: b.get(cache_key))
        if entry is not None:
            age_ms = (self._clock() - entry.timestamp) * 1000.0
            if age_ms < cfg.fresh_ttl_ms:
                return entry.payload
            if age_ms < cfg.stale_window_ms:
                self._start_fetch(cache_key, fetch, cfg, background=True)
                return entry.payload
        task = self._start_fetch(cache_key, fetch, cfg, background=False)
        # shield: one cancelled waiter must not cancel the shared fetch
        return await asyncio.shield(task)

    def _start_fetch(self, cache_key: str, fetch: Fetch, cfg: CacheConfig, background: bool) -> asyncio.Task:
        task = self._inflight.get(cache_key)
        if task is not None:
            return task
        task = asyncio.create_task(self._fetch_and_store(cache_key, fetch, cfg))
        self._inflight[cache_key] = task
        task.add_done_callback(lambda t: self._fetch_done(cache_key, t, background))
        return task

    async def _fetch_and_store(self, cache_key: str, fetch: Fetch, cfg: CacheConfig) -> Any:
        payload = await fetch()
        entry = CacheEntry(payload=payload, timestamp=self._clock())
        ttl_seconds = cfg.stale_window_ms / 1000.0
        await self._chain.first_success(lambda b: b.set(cache_key, entry, ttl_seconds))
        return payload

    def _fetch_done(self, cache_key: str, task: asyncio.Task, background: bool) -> None:
        if self._inflight.get(cache_key) is task:
            del self._inflight[cache_key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and background:
            logger.warning(f"Cache revalidation failed for {cache_key}: {exc!r}")

    async def wait_idle(self) -> None:
        """Wait for all in-flight fetches, ignoring their errors."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()


def build_cache(redis_client: Any = None, timeout_seconds: float = 0.25) -> StaleWhileRevalidateCache:
    backends: list[Any] = []
    if redis_client is not None:
        backends.append(RedisCacheBackend(redis_client))
    backends.append(MemoryCacheBackend())
    return StaleWhileRevalidateCache(backends, timeout_seconds=timeout_seconds)
