"""
Idempotency store for write-class tools.

Records are keyed by (tenant, tool, idempotency key) and hold the canonical
hash of the request that produced them. A record is written insert-if-absent
and is never overwritten before its TTL expires.
"""
from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from .config import DEFAULT_IDEMPOTENCY_TTL_SECONDS, MIN_IDEMPOTENCY_TTL_SECONDS
from .storage import RankedBackends, idempotency_keys

logger = logging.getLogger("actions_gateway.idempotency")


def canonical_json(value: Any) -> str:
    """JSON with sorted keys and compact separators; stable across key order."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def request_hash(tool: str, tenant_id: str, body: Any) -> str:
    content = canonical_json({"tool": tool, "tenant_id": tenant_id, "body": body})
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IdempotencyRecord:
    request_hash: str
    status_code: int
    payload: Any
    created_at: float

    def to_json(self) -> str:
        return json.dumps(
            {
                "request_hash": self.request_hash,
                "status_code": self.status_code,
                "payload": self.payload,
                "created_at": self.created_at,
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str) -> "IdempotencyRecord":
        data = json.loads(raw)
        return cls(
            request_hash=data["request_hash"],
            status_code=int(data["status_code"]),
            payload=data["payload"],
            created_at=float(data["created_at"]),
        )


class MemoryIdempotencyBackend:
    """In-process tier. Lost on restart; expired records are pruned."""

    name = "memory"

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.time) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._records: Dict[Tuple[str, str, str], IdempotencyRecord] = {}

    def _expired(self, record: IdempotencyRecord, now: float) -> bool:
        return now - record.created_at >= self._ttl

    def prune(self) -> int:
        now = self._clock()
        expired = [key for key, rec in self._records.items() if self._expired(rec, now)]
        for key in expired:
            del self._records[key]
        return len(expired)

    async def get(self, tenant_id: str, tool: str, key: str) -> Optional[IdempotencyRecord]:
        record = self._records.get((tenant_id, tool, key))
        if record is not None and self._expired(record, self._clock()):
            del self._records[(tenant_id, tool, key)]
            return None
        return record

    async def set(self, tenant_id: str, tool: str, key: str, record: IdempotencyRecord) -> bool:
        self.prune()
        if (tenant_id, tool, key) in self._records:
            return False
        self._records[(tenant_id, tool, key)] = record
        return True

    def __len__(self) -> int:
        return len(self._records)


class RedisIdempotencyBackend:
    name = "redis"

    def __init__(self, client: Any, ttl_seconds: int) -> None:
        self._client = client
        self._ttl = ttl_seconds

    @staticmethod
    def _key(tenant_id: str, tool: str, key: str) -> str:
        return f"idem:{tenant_id}:{tool}:{key}"

    async def get(self, tenant_id: str, tool: str, key: str) -> Optional[IdempotencyRecord]:
        raw = await self._client.get(self._key(tenant_id, tool, key))
        if not raw:
            return None
        return IdempotencyRecord.from_json(raw)

    async def set(self, tenant_id: str, tool: str, key: str, record: IdempotencyRecord) -> bool:
        created = await self._client.set(
            self._key(tenant_id, tool, key), record.to_json(), ex=self._ttl, nx=True
        )
        return bool(created)


class SqlIdempotencyBackend:
    name = "database"

    def __init__(self, engine: AsyncEngine, ttl_seconds: int, clock: Callable[[], float] = time.time) -> None:
        self._engine = engine
        self._ttl = ttl_seconds
        self._clock = clock

    @staticmethod
    def _match(tenant_id: str, tool: str, key: str) -> Any:
        return and_(
            idempotency_keys.c.tenant_id == tenant_id,
            idempotency_keys.c.tool == tool,
            idempotency_keys.c.idem_key == key,
        )

    async def get(self, tenant_id: str, tool: str, key: str) -> Optional[IdempotencyRecord]:
        cutoff = self._clock() - self._ttl
        stmt = select(
            idempotency_keys.c.req_hash,
            idempotency_keys.c.status,
            idempotency_keys.c.payload,
            idempotency_keys.c.created_at,
        ).where(self._match(tenant_id, tool, key), idempotency_keys.c.created_at > cutoff)
        async with self._engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        if row is None:
            return None
        return IdempotencyRecord(
            request_hash=row.req_hash,
            status_code=int(row.status),
            payload=row.payload,
            created_at=float(row.created_at),
        )

    async def set(self, tenant_id: str, tool: str, key: str, record: IdempotencyRecord) -> bool:
        cutoff = self._clock() - self._ttl
        try:
            async with self._engine.begin() as conn:
                # an expired row must not block reuse of the key
                await conn.execute(
                    delete(idempotency_keys).where(
                        self._match(tenant_id, tool, key), idempotency_keys.c.created_at <= cutoff
                    )
                )
                await conn.execute(
                    insert(idempotency_keys).values(
                        tenant_id=tenant_id,
                        tool=tool,
                        idem_key=key,
                        req_hash=record.request_hash,
                        status=record.status_code,
                        payload=record.payload,
                        created_at=record.created_at,
                    )
                )
        except IntegrityError:
            return False
        return True


class IdempotencyStore:
    def __init__(self, backends: Sequence[Any], timeout_seconds: float = 0.25) -> None:
        self._chain: RankedBackends[Any] = RankedBackends(backends, timeout_seconds, "idempotency")

    @property
    def backend_names(self) -> list[str]:
        return self._chain.names()

    async def get(self, tenant_id: str, tool: str, key: str) -> Optional[IdempotencyRecord]:
        return await self._chain.first_hit(lambda b: b.get(tenant_id, tool, key))

    async def set(self, tenant_id: str, tool: str, key: str, record: IdempotencyRecord) -> bool:
        """Store the record. Returns False when a record already existed."""
        stored = await self._chain.first_success(lambda b: b.set(tenant_id, tool, key, record))
        if stored is False:
            logger.info(f"Idempotency record already present for tenant={tenant_id} tool={tool}")
        return bool(stored)


def build_idempotency_store(
    engine: Optional[AsyncEngine] = None,
    redis_client: Any = None,
    ttl_seconds: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS,
    timeout_seconds: float = 0.25,
) -> IdempotencyStore:
    ttl = max(MIN_IDEMPOTENCY_TTL_SECONDS, int(ttl_seconds))
    backends: list[Any] = []
    if engine is not None:
        backends.append(SqlIdempotencyBackend(engine, ttl))
    if redis_client is not None:
        backends.append(RedisIdempotencyBackend(redis_client, ttl))
    backends.append(MemoryIdempotencyBackend(ttl))
    return IdempotencyStore(backends, timeout_seconds=timeout_seconds)
