from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .config import RateLimitConfig
from .errors import RateLimitError
from .state import TenantArena


@dataclass
class TokenBucket:
    tokens: Optional[float] = None
    last_refill: float = field(default_factory=time.monotonic)

    def refill(self, now: float, rps: float, burst: float) -> None:
        if self.tokens is None:
            # first use starts full
            self.tokens = burst
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(burst, self.tokens + elapsed * rps)
        self.last_refill = now

    def take(self, now: float, rps: float, burst: float) -> float:
        """Consume one token. Returns 0.0 on success, else seconds until a token is free."""
        self.refill(now, rps, burst)
        if self.tokens < 1.0:
            return (1.0 - self.tokens) / rps
        self.tokens -= 1.0
        return 0.0


class TokenBucketLimiter:
    """Per-tenant token bucket admission."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._buckets: TenantArena[TokenBucket] = TenantArena(lambda: TokenBucket(last_refill=self._clock()))

    def admit(self, tenant_id: str, config: Optional[RateLimitConfig] = None) -> None:
        cfg = config or RateLimitConfig()
        entry = self._buckets.entry(tenant_id)
        with entry.lock:
            wait_seconds = entry.value.take(self._clock(), cfg.rps, cfg.burst)
        if wait_seconds > 0:
            raise RateLimitError(
                "Too Many Requests",
                retry_after_ms=max(1, math.ceil(wait_seconds * 1000)),
                details={"tenant_id": tenant_id, "rps": cfg.rps, "burst": cfg.burst},
            )

    def tokens(self, tenant_id: str) -> Optional[float]:
        entry = self._buckets.entry(tenant_id)
        with entry.lock:
            return entry.value.tokens

    def snapshot(self) -> Dict[str, Optional[float]]:
        return {tenant_id: self.tokens(tenant_id) for tenant_id in self._buckets.keys()}
