"""
Append-only outbox of dispatched write events for downstream consumers.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncEngine

from .storage import outbox as outbox_table

logger = logging.getLogger("actions_gateway.outbox")


@dataclass(frozen=True)
class OutboxEvent:
    tenant_id: str
    tool: str
    payload: Dict[str, Any]
    correlation_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.created_at,
            "tenant_id": self.tenant_id,
            "tool": self.tool,
            "correlation_id": self.correlation_id,
            "payload": self.payload,
        }


class JsonlOutbox:
    """One JSON document per line, appended under a lock."""

    name = "jsonl"

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        os.makedirs(self._path.parent, exist_ok=True)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _write(self, line: str) -> None:
        with open(self._path, "a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    async def append(self, event: OutboxEvent) -> None:
        line = json.dumps(event.to_dict(), ensure_ascii=False, separators=(",", ":"))
        async with self._lock:
            await asyncio.to_thread(self._write, line)

    async def read_all(self) -> List[Dict[str, Any]]:
        if not self._path.exists():
            return []
        with open(self._path, "r", encoding="utf-8") as fh:
            return [json.loads(line) for line in fh if line.strip()]


class SqlOutbox:
    name = "database"

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def append(self, event: OutboxEvent) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                insert(outbox_table).values(
                    tenant_id=event.tenant_id,
                    tool=event.tool,
                    correlation_id=event.correlation_id,
                    payload=event.payload,
                    created_at=event.created_at,
                    dispatched=False,
                )
            )

    async def read_all(self) -> List[Dict[str, Any]]:
        stmt = select(outbox_table).order_by(outbox_table.c.id)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [
            {
                "ts": row["created_at"],
                "tenant_id": row["tenant_id"],
                "tool": row["tool"],
                "correlation_id": row["correlation_id"],
                "payload": row["payload"],
            }
            for row in rows
        ]


def build_outbox(engine: Optional[AsyncEngine], path: Optional[Path]) -> Any:
    if engine is not None:
        return SqlOutbox(engine)
    if path is None:
        path = Path(__file__).resolve().parent.parent / "logs" / "outbox.jsonl"
    logger.info(f"Outbox writing to {path}")
    return JsonlOutbox(path)
