"""
Invocation pipeline.

Every tool call passes the same stages, each of which may short-circuit:

 1. breaker admission, then rate-limit admission (per tenant)
 2. authentication
 3. idempotency key presence (write tools)
 4. scopes
 5. input schema validation
 6. idempotency lookup (write tools): replay or conflict
 7. policy evaluation and approval token check
 8. handler dispatch under a timeout (through the cache for cacheable reads)
 9. post-dispatch bookkeeping (best effort, bounded): idempotency record,
    breaker outcome, then the outbox append once the key lock is released
10. output schema validation

The runtime (config snapshot + registry) is dereferenced once per call.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from .approval import ApprovalTokenClaims, ApprovalVerifier
from .cache import StaleWhileRevalidateCache
from .circuit_breaker import CircuitBreaker
from .config import TenantContext
from .errors import (
    PROVIDER_UNAVAILABLE,
    ApprovalRequired,
    GatewayError,
    IdempotencyConflictError,
    IdempotencyKeyMissingError,
    NotImplementedToolError,
    PermissionDenied,
    ProviderUnavailable,
    UnknownToolError,
)
from .idempotency import IdempotencyRecord, IdempotencyStore, request_hash
from .observability import InMemoryMetrics
from .outbox import OutboxEvent
from .policy import DENIED, NEEDS_APPROVAL, evaluate
from .registry import GatewayRuntime, HandlerContext, ToolCapability
from .security import AuthBackend, Principal, require_scopes

logger = logging.getLogger("actions_gateway.pipeline")


@dataclass
class InvocationRequest:
    tool: str
    body: Dict[str, Any]
    tenant_id: Optional[str] = None
    authorization: Optional[str] = None
    idempotency_key: Optional[str] = None
    approval_token: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass
class InvocationResult:
    status_code: int
    payload: Any
    headers: Dict[str, str] = field(default_factory=dict)
    replayed: bool = False

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


@dataclass
class _Attempt:
    """Per-call bookkeeping shared between the stages."""
    tenant: TenantContext
    timeout_ms: int
    store_timeout_ms: int = 250
    probe: bool = False
    dispatched: bool = False
    foreground: bool = True


class InvocationPipeline:
    def __init__(
        self,
        runtime: Callable[[], GatewayRuntime],
        *,
        auth: AuthBackend,
        limiter: Any,
        breaker: CircuitBreaker,
        idempotency: IdempotencyStore,
        cache: StaleWhileRevalidateCache,
        outbox: Any,
        approvals: ApprovalVerifier,
        metrics: InMemoryMetrics,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._runtime = runtime
        self._auth = auth
        self._limiter = limiter
        self._breaker = breaker
        self._idempotency = idempotency
        self._cache = cache
        self._outbox = outbox
        self._approvals = approvals
        self._metrics = metrics
        self._http = http
        self._key_locks: Dict[Tuple[str, str, str], asyncio.Lock] = {}
        self._key_waiters: Dict[Tuple[str, str, str], int] = {}

    async def invoke(self, request: InvocationRequest, runtime: Optional[GatewayRuntime] = None) -> InvocationResult:
        """Run one tool call. Pass the runtime when the caller already dereferenced it."""
        runtime = runtime or self._runtime()
        tenant_id = request.tenant_id or runtime.snapshot.settings.default_tenant
        capability = runtime.registry.get(request.tool)
        started = time.perf_counter()
        try:
            if capability is None:
                raise UnknownToolError("Unknown tool", details={"tool": request.tool})
            result = await self._run(runtime, capability, tenant_id, request)
        except GatewayError as exc:
            result = InvocationResult(exc.status_code, exc.to_envelope(), exc.headers())

        duration_ms = (time.perf_counter() - started) * 1000.0
        if capability is not None:
            self._metrics.record(request.tool, duration_ms, error=result.is_error)
        log = logger.warning if result.status_code >= 500 else logger.info
        log(
            f"{request.tool} -> {result.status_code}{' (replay)' if result.replayed else ''}",
            extra={
                "tool": request.tool,
                "tenant": tenant_id,
                "correlation_id": request.correlation_id or "",
                "duration_ms": round(duration_ms, 2),
                "status": result.status_code,
            },
        )
        return result

    async def _run(
        self,
        runtime: GatewayRuntime,
        capability: ToolCapability,
        tenant_id: str,
        request: InvocationRequest,
    ) -> InvocationResult:
        descriptor = capability.descriptor
        attempt = _Attempt(
            tenant=runtime.snapshot.tenant(tenant_id),
            timeout_ms=runtime.snapshot.settings.handler_timeout_ms,
            store_timeout_ms=runtime.snapshot.settings.store_timeout_ms,
        )
        attempt.probe = self._breaker.admit(tenant_id, attempt.tenant.breaker)
        try:
            self._limiter.admit(tenant_id, attempt.tenant.rate_limit)
            principal = await self._auth.authenticate(request.authorization)

            key = (request.idempotency_key or "").strip() or None
            if descriptor.is_write and key is None:
                raise IdempotencyKeyMissingError(
                    "Idempotency-Key header is required for write tools", details={"tool": descriptor.name}
                )
            if not require_scopes(principal.scopes, descriptor.scopes_required):
                raise PermissionDenied(
                    "Insufficient scopes", details={"required": list(descriptor.scopes_required)}
                )
            capability.validate_input(request.body)

            ctx = HandlerContext(
                tool=descriptor.name,
                tenant=attempt.tenant,
                principal=principal,
                correlation_id=request.correlation_id,
                http=self._http,
            )
            if descriptor.is_write:
                result = await self._run_write(runtime, capability, ctx, request, key, attempt)
            else:
                result = await self._run_read(runtime, capability, ctx, request, attempt)
        finally:
            if attempt.probe and not attempt.dispatched:
                self._breaker.release_probe(tenant_id)

        capability.validate_output(result.payload)
        return result

    async def _run_write(
        self,
        runtime: GatewayRuntime,
        capability: ToolCapability,
        ctx: HandlerContext,
        request: InvocationRequest,
        key: str,
        attempt: _Attempt,
    ) -> InvocationResult:
        tenant_id = ctx.tenant.tenant_id
        tool = capability.name
        req_hash = request_hash(tool, tenant_id, request.body)

        async with self._key_lock((tenant_id, tool, key)):
            record = await self._idempotency.get(tenant_id, tool, key)
            if record is not None:
                if record.request_hash != req_hash:
                    raise IdempotencyConflictError(tool, key)
                logger.info(f"Idempotent replay for tool={tool} tenant={tenant_id}")
                return InvocationResult(record.status_code, record.payload, replayed=True)

            approval = self._check_policy(runtime, capability, ctx.tenant, ctx.principal, request)
            payload = await self._dispatch_approved(capability, ctx, request.body, attempt, approval)

            # bounded by the store chain's per-backend timeouts
            await self._best_effort(
                "idempotency record",
                self._idempotency.set(
                    tenant_id, tool, key,
                    IdempotencyRecord(request_hash=req_hash, status_code=200, payload=payload, created_at=time.time()),
                ),
            )

        # outside the key lock: a slow outbox must not hold up same-key replays
        await self._best_effort(
            "outbox append",
            self._outbox.append(
                OutboxEvent(
                    tenant_id=tenant_id,
                    tool=tool,
                    payload={"request": request.body, "result": payload},
                    correlation_id=request.correlation_id,
                )
            ),
            timeout_seconds=attempt.store_timeout_ms / 1000.0,
        )
        return InvocationResult(200, payload)

    async def _run_read(
        self,
        runtime: GatewayRuntime,
        capability: ToolCapability,
        ctx: HandlerContext,
        request: InvocationRequest,
        attempt: _Attempt,
    ) -> InvocationResult:
        approval = self._check_policy(runtime, capability, ctx.tenant, ctx.principal, request)
        if not capability.descriptor.cacheable:
            payload = await self._dispatch_approved(capability, ctx, request.body, attempt, approval)
            return InvocationResult(200, payload)

        timeout = attempt.timeout_ms / 1000.0

        async def fetch() -> Dict[str, Any]:
            if not attempt.foreground:
                # background revalidation: no caller to answer, breaker untouched
                return await asyncio.wait_for(capability.invoke(ctx, request.body), timeout)
            return await self._dispatch_approved(capability, ctx, request.body, attempt, approval)

        cache_key = f"{capability.name}:{request_hash(capability.name, ctx.tenant.tenant_id, request.body)}"
        try:
            payload = await self._cache.get(ctx.tenant.tenant_id, cache_key, fetch, ctx.tenant.cache)
        finally:
            attempt.foreground = False
        return InvocationResult(200, payload)

    def _check_policy(
        self,
        runtime: GatewayRuntime,
        capability: ToolCapability,
        tenant: TenantContext,
        principal: Principal,
        request: InvocationRequest,
    ) -> Optional[ApprovalTokenClaims]:
        """Raise when policy blocks the call. Returns the verified approval claims, if any."""
        action = capability.descriptor.policy
        if not action:
            return None
        decision = evaluate(runtime.snapshot.policy(tenant.tenant_id), action, request.body)
        if decision.status == DENIED:
            raise PermissionDenied(decision.reason or "Denied by policy", details={"policy": action})
        if decision.status != NEEDS_APPROVAL:
            return None
        if not request.approval_token:
            raise ApprovalRequired("Approval required", details={"required_steps": list(decision.required_steps)})
        ok, reason, claims = self._approvals.verify(
            request.approval_token, capability.name, tenant.tenant_id, principal.subject
        )
        if not ok:
            raise PermissionDenied("Approval token rejected", details={"reason": reason})
        return claims

    async def _dispatch_approved(
        self,
        capability: ToolCapability,
        ctx: HandlerContext,
        body: Dict[str, Any],
        attempt: _Attempt,
        approval: Optional[ApprovalTokenClaims],
    ) -> Dict[str, Any]:
        try:
            return await self._dispatch(capability, ctx, body, attempt)
        except Exception:
            # the approved call did not happen; the token stays usable for a retry
            if approval is not None:
                self._approvals.release(approval.jti)
            raise

    async def _dispatch(
        self,
        capability: ToolCapability,
        ctx: HandlerContext,
        body: Dict[str, Any],
        attempt: _Attempt,
    ) -> Dict[str, Any]:
        if capability.handler is None:
            raise NotImplementedToolError("Tool not implemented yet", details={"tool": capability.name})

        tenant = attempt.tenant
        timeout_ms = attempt.timeout_ms
        probe = attempt.probe
        attempt.dispatched = True
        try:
            payload = await asyncio.wait_for(capability.invoke(ctx, body), timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            self._breaker.record_failure(tenant.tenant_id, tenant.breaker, probe=probe)
            raise ProviderUnavailable(
                "Provider timed out", details={"tool": capability.name, "timeout_ms": timeout_ms}
            )
        except GatewayError as exc:
            if exc.error_type == PROVIDER_UNAVAILABLE:
                self._breaker.record_failure(tenant.tenant_id, tenant.breaker, probe=probe)
            else:
                # the provider answered; the request itself was bad
                self._breaker.record_success(tenant.tenant_id, probe=probe)
            raise
        except Exception as exc:
            logger.error(f"Handler {capability.name} failed: {exc!r}", exc_info=True)
            self._breaker.record_failure(tenant.tenant_id, tenant.breaker, probe=probe)
            raise ProviderUnavailable("Provider unavailable", details={"tool": capability.name}) from exc

        self._breaker.record_success(tenant.tenant_id, probe=probe)
        return payload

    async def _best_effort(
        self, what: str, operation: Awaitable[Any], timeout_seconds: Optional[float] = None
    ) -> None:
        try:
            await asyncio.wait_for(operation, timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"Post-dispatch {what} timed out after {timeout_seconds}s")
        except Exception as exc:
            logger.error(f"Post-dispatch {what} failed: {exc!r}")

    @asynccontextmanager
    async def _key_lock(self, key: Tuple[str, str, str]) -> AsyncIterator[None]:
        """Serialize same-key writes within this process."""
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        self._key_waiters[key] = self._key_waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._key_waiters[key] -= 1
            if self._key_waiters[key] == 0:
                del self._key_waiters[key]
                del self._key_locks[key]
