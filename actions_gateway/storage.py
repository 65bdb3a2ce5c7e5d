"""
Storage bootstrap and the ranked backend chain.

Backends are resolved once at startup: a SQL database when DATABASE_URL is
set and reachable, Redis when REDIS_URL is set and reachable, and always the
in-process tier last. Operations walk the chain in order; a backend that
errors or exceeds the store timeout is skipped and the next (weaker) one is
tried.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

import redis.asyncio as redis
from sqlalchemy import JSON, Boolean, Column, Float, Integer, MetaData, String, Table
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger("actions_gateway.storage")

B = TypeVar("B")
R = TypeVar("R")

metadata = MetaData()

idempotency_keys = Table(
    "idempotency_keys",
    metadata,
    Column("tenant_id", String(128), primary_key=True),
    Column("tool", String(128), primary_key=True),
    Column("idem_key", String(255), primary_key=True),
    Column("req_hash", String(64), nullable=False),
    Column("status", Integer, nullable=False),
    Column("payload", JSON, nullable=False),
    Column("created_at", Float, nullable=False),
)

outbox = Table(
    "outbox",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(128), nullable=False),
    Column("tool", String(128), nullable=False),
    Column("correlation_id", String(128), nullable=True),
    Column("payload", JSON, nullable=False),
    Column("created_at", Float, nullable=False),
    Column("dispatched", Boolean, nullable=False, default=False),
)


def normalize_database_url(url: str) -> str:
    """Map plain database URLs onto their asyncio drivers."""
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("sqlite://") and not url.startswith("sqlite+"):
        return "sqlite+aiosqlite://" + url[len("sqlite://"):]
    return url


async def create_sql_engine(url: str, timeout_seconds: float = 5.0) -> Optional[AsyncEngine]:
    if not url:
        return None
    engine = create_async_engine(normalize_database_url(url), pool_pre_ping=True)
    try:
        async def _init() -> None:
            async with engine.begin() as conn:
                await conn.run_sync(metadata.create_all)

        await asyncio.wait_for(_init(), timeout=timeout_seconds)
    except Exception as exc:
        logger.error(f"Failed to init database, continuing without it: {exc}")
        await engine.dispose()
        return None
    logger.info("Database backend ready")
    return engine


async def create_redis_client(url: str, timeout_seconds: float = 2.0) -> Optional[redis.Redis]:
    if not url:
        return None
    client = redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=timeout_seconds,
        socket_timeout=timeout_seconds,
    )
    try:
        await asyncio.wait_for(client.ping(), timeout=timeout_seconds)
    except Exception as exc:
        logger.warning(f"Failed to init Redis, proceeding without it: {exc}")
        await client.aclose()
        return None
    logger.info("Redis backend ready")
    return client


@dataclass
class StorageBackends:
    engine: Optional[AsyncEngine] = None
    redis: Optional[redis.Redis] = None

    @classmethod
    async def connect(cls, database_url: str, redis_url: str) -> "StorageBackends":
        engine = await create_sql_engine(database_url)
        client = await create_redis_client(redis_url)
        if engine is None and client is None:
            logger.warning(
                "No durable backend available: idempotency records and cache entries "
                "are kept in process memory and lost on restart"
            )
        return cls(engine=engine, redis=client)

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()


class RankedBackends(Generic[B]):
    """Interchangeable backends ordered from most to least durable."""

    def __init__(self, backends: Sequence[B], timeout_seconds: float, component: str) -> None:
        if not backends:
            raise ValueError(f"{component}: at least one backend is required")
        self._backends: List[B] = list(backends)
        self._timeout = timeout_seconds
        self._component = component

    @property
    def backends(self) -> List[B]:
        return list(self._backends)

    def names(self) -> List[str]:
        return [getattr(b, "name", type(b).__name__) for b in self._backends]

    async def _call(self, backend: B, op: Callable[[B], Awaitable[R]]) -> R:
        return await asyncio.wait_for(op(backend), timeout=self._timeout)

    async def first_hit(self, op: Callable[[B], Awaitable[Optional[R]]]) -> Optional[R]:
        """Return the first non-None result, skipping failing backends."""
        for backend in self._backends:
            try:
                result = await self._call(backend, op)
            except Exception as exc:
                self._degraded(backend, exc)
                continue
            if result is not None:
                return result
        return None

    async def first_success(self, op: Callable[[B], Awaitable[R]]) -> Optional[R]:
        """Run op on the first backend that does not fail."""
        for backend in self._backends:
            try:
                return await self._call(backend, op)
            except Exception as exc:
                self._degraded(backend, exc)
        logger.error(f"[{self._component}] all backends failed")
        return None

    def _degraded(self, backend: Any, exc: BaseException) -> None:
        name = getattr(backend, "name", type(backend).__name__)
        reason = "timeout" if isinstance(exc, asyncio.TimeoutError) else repr(exc)
        logger.warning(f"[{self._component}] backend {name} failed ({reason}), degrading")
