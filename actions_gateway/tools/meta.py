from __future__ import annotations

import time
from typing import Any, Dict

from ..registry import HandlerContext

_STARTED = time.monotonic()


def uptime_ms() -> int:
    return int((time.monotonic() - _STARTED) * 1000)


async def health(ctx: HandlerContext, body: Dict[str, Any]) -> Dict[str, Any]:
    return {"status": "ok", "uptime_ms": uptime_ms(), "tenant_id": ctx.tenant.tenant_id}
