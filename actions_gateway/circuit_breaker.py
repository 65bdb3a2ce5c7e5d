"""
Per-tenant circuit breaker.

States:
- CLOSED: normal operation, requests pass through
- OPEN: the tenant's provider is failing, requests are rejected immediately
- HALF_OPEN: reset window elapsed, exactly one probe request is let through

HALF_OPEN is never stored; it is derived from ``opened_at`` and the clock on
each admission.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .config import BreakerConfig
from .errors import CircuitBreakerError
from .state import TenantArena

logger = logging.getLogger("actions_gateway.circuit_breaker")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


@dataclass
class BreakerState:
    failure_count: int = 0
    opened_at: Optional[float] = None
    probe_started_at: Optional[float] = None

    def state(self, now: float, reset_seconds: float) -> str:
        if self.opened_at is None:
            return CLOSED
        if now - self.opened_at < reset_seconds:
            return OPEN
        return HALF_OPEN


class CircuitBreaker:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._states: TenantArena[BreakerState] = TenantArena(BreakerState)

    def admit(self, tenant_id: str, config: Optional[BreakerConfig] = None) -> bool:
        """
        Admission check. Raises CircuitBreakerError while open.

        Returns True when this admission is the half-open probe; the caller
        must then report an outcome via record_success/record_failure, or
        release_probe when the request never reached the provider.
        """
        cfg = config or BreakerConfig()
        reset_seconds = cfg.reset_ms / 1000.0
        entry = self._states.entry(tenant_id)
        with entry.lock:
            st = entry.value
            now = self._clock()
            state = st.state(now, reset_seconds)
            if state == CLOSED:
                return False
            if state == OPEN:
                remaining = reset_seconds - (now - st.opened_at)
                raise CircuitBreakerError(tenant_id, max(1, math.ceil(remaining * 1000)))
            # half-open: one probe at a time; a probe outstanding for a whole
            # reset window is treated as lost
            if st.probe_started_at is not None and now - st.probe_started_at < reset_seconds:
                remaining = reset_seconds - (now - st.probe_started_at)
                raise CircuitBreakerError(tenant_id, max(1, math.ceil(remaining * 1000)))
            st.probe_started_at = now
        logger.info(f"Circuit half-open, admitting probe for tenant={tenant_id}")
        return True

    def record_success(self, tenant_id: str, probe: bool = False) -> None:
        entry = self._states.entry(tenant_id)
        with entry.lock:
            was_open = entry.value.opened_at is not None
            if was_open and not probe:
                # admitted before the circuit opened; only the probe may close it
                return
            entry.value.failure_count = 0
            entry.value.opened_at = None
            entry.value.probe_started_at = None
        if was_open:
            logger.info(f"Circuit closed for tenant={tenant_id}")

    def record_failure(self, tenant_id: str, config: Optional[BreakerConfig] = None, probe: bool = False) -> None:
        cfg = config or BreakerConfig()
        entry = self._states.entry(tenant_id)
        with entry.lock:
            st = entry.value
            now = self._clock()
            if st.opened_at is not None:
                if not probe:
                    return
                # failed probe: restart the window
                st.opened_at = now
                st.probe_started_at = None
                st.failure_count = max(st.failure_count + 1, cfg.failure_threshold)
                opened = True
            else:
                st.failure_count += 1
                opened = st.failure_count >= cfg.failure_threshold
                if opened:
                    st.opened_at = now
        if opened:
            logger.warning(f"Circuit open for tenant={tenant_id} after {st.failure_count} failures")

    def release_probe(self, tenant_id: str) -> None:
        """Give back a probe slot that never reached the provider."""
        entry = self._states.entry(tenant_id)
        with entry.lock:
            entry.value.probe_started_at = None

    def get_state(self, tenant_id: str, config: Optional[BreakerConfig] = None) -> str:
        cfg = config or BreakerConfig()
        entry = self._states.entry(tenant_id)
        with entry.lock:
            return entry.value.state(self._clock(), cfg.reset_ms / 1000.0)

    def failure_count(self, tenant_id: str) -> int:
        entry = self._states.entry(tenant_id)
        with entry.lock:
            return entry.value.failure_count

    def get_status(self) -> Dict[str, Any]:
        """Status of all tenant circuits for observability."""
        status: Dict[str, Any] = {}
        for tenant_id in self._states.keys():
            entry = self._states.entry(tenant_id)
            with entry.lock:
                status[tenant_id] = {
                    "failures": entry.value.failure_count,
                    "open": entry.value.opened_at is not None,
                    "probe_in_flight": entry.value.probe_started_at is not None,
                }
        return status
