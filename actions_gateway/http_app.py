"""
FastAPI application for the actions gateway.

- POST /tools/<dotted name with dots as slashes>: tool calls through the pipeline
- GET /tools: manifest listing
- GET /health, GET /metrics: public
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .approval import ApprovalVerifier
from .cache import build_cache
from .circuit_breaker import CircuitBreaker
from .config import SnapshotHolder, build_snapshot, watch_config
from .errors import GatewayError, UnknownToolError, ValidationError
from .idempotency import build_idempotency_store
from .observability import InMemoryMetrics, setup_logger
from .outbox import build_outbox
from .pipeline import InvocationPipeline, InvocationRequest
from .rate_limits import TokenBucketLimiter
from .registry import GatewayRuntime, Handler
from .security import build_auth_backend
from .storage import StorageBackends
from .tools import DEFAULT_HANDLERS
from .tools.meta import uptime_ms
from .trace_context import CORRELATION_ID_HEADER, context_from_headers

logger = logging.getLogger("actions_gateway.http_app")

TENANT_HEADER = "x-tenant-id"
IDEMPOTENCY_HEADER = "idempotency-key"
APPROVAL_HEADER = "x-approval-token"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Sets up the trace context for each request and echoes the correlation id.

    NEVER log tokens from these headers.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        ctx = context_from_headers(request.headers)
        request.state.correlation_id = ctx["correlation_id"]
        response = await call_next(request)
        response.headers[CORRELATION_ID_HEADER] = ctx["correlation_id"]
        return response


def _compute_tools_hash(tool_names: list[str]) -> str:
    """SHA256 over the sorted tool names, one per line."""
    content = "\n".join(sorted(tool_names))
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(exc.to_envelope(), status_code=exc.status_code, headers=exc.headers())


def _pop_str(body: Dict[str, Any], name: str) -> Optional[str]:
    value = body.pop(name, None)
    return str(value) if value is not None else None


def create_app(
    config_path: Optional[Path] = None,
    handlers: Optional[Mapping[str, Handler]] = None,
    *,
    limiter: Optional[TokenBucketLimiter] = None,
    breaker: Optional[CircuitBreaker] = None,
) -> FastAPI:
    """
    Build the gateway app.

    The configuration is loaded here so a broken manifest fails at startup;
    storage, the HTTP client and the config watcher live in the lifespan.
    """
    handler_map = dict(DEFAULT_HANDLERS if handlers is None else handlers)
    holder: SnapshotHolder[GatewayRuntime] = SnapshotHolder(
        lambda: GatewayRuntime.build(build_snapshot(config_path), handler_map)
    )
    metrics = InMemoryMetrics()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        settings = holder.current().snapshot.settings
        setup_logger({"server": {"log_level": settings.log_level}})
        store_timeout = settings.store_timeout_ms / 1000.0

        storage = await StorageBackends.connect(settings.database_url, settings.redis_url)
        # no redirects for connector calls
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.handler_timeout_ms / 1000.0),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            follow_redirects=False,
        )
        cache = build_cache(storage.redis, timeout_seconds=store_timeout)
        outbox = build_outbox(storage.engine, settings.outbox_path)
        circuit_breaker = breaker or CircuitBreaker()
        idempotency = build_idempotency_store(
            storage.engine,
            storage.redis,
            ttl_seconds=settings.idempotency_ttl_seconds,
            timeout_seconds=store_timeout,
        )
        pipeline = InvocationPipeline(
            holder.current,
            auth=build_auth_backend(settings.auth),
            limiter=limiter or TokenBucketLimiter(),
            breaker=circuit_breaker,
            idempotency=idempotency,
            cache=cache,
            outbox=outbox,
            approvals=ApprovalVerifier(),
            metrics=metrics,
            http=http_client,
        )
        app.state.pipeline = pipeline
        app.state.outbox = outbox
        app.state.cache = cache
        app.state.breaker = circuit_breaker

        watcher: Optional[asyncio.Task] = None
        if settings.reload_interval_seconds > 0:
            watcher = asyncio.create_task(
                watch_config(holder, holder.current().snapshot.source_dir, settings.reload_interval_seconds)
            )
        logger.info(
            f"{settings.name} ready with {len(holder.current().registry)} tools "
            f"(idempotency backends: {', '.join(idempotency.backend_names)})"
        )
        try:
            yield
        finally:
            if watcher is not None:
                watcher.cancel()
                with suppress(asyncio.CancelledError):
                    await watcher
            await cache.aclose()
            await http_client.aclose()
            await storage.close()

    app = FastAPI(
        title="Actions Gateway",
        description="Tool gateway for CRM actions with admission control and idempotency",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.holder = holder
    app.state.metrics = metrics
    app.add_middleware(RequestContextMiddleware)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "uptime_ms": uptime_ms()}

    @app.get("/metrics")
    async def metrics_endpoint() -> Response:
        """Prometheus-compatible metrics endpoint."""
        content = "# HELP actions_gateway_up Gateway health status\n# TYPE actions_gateway_up gauge\nactions_gateway_up 1\n"
        content += metrics.render_prometheus()
        return Response(content=content, media_type="text/plain; version=0.0.4")

    @app.get("/tools")
    async def list_tools() -> Dict[str, Any]:
        runtime = holder.current()
        tools = [
            {
                "name": cap.name,
                "path": cap.descriptor.path,
                "description": cap.descriptor.description,
                "side_effects": cap.descriptor.side_effects,
                "scopes_required": list(cap.descriptor.scopes_required),
                "cacheable": cap.descriptor.cacheable,
                "implemented": cap.handler is not None,
            }
            for cap in runtime.registry
        ]
        return {"tools": tools, "tools_hash": _compute_tools_hash(runtime.registry.names())}

    @app.post("/tools/{tool_path:path}")
    async def call_tool(tool_path: str, request: Request) -> Response:
        runtime = holder.current()
        capability = runtime.registry.by_path("/tools/" + tool_path)
        if capability is None:
            return _error_response(UnknownToolError("Unknown tool", details={"path": request.url.path}))

        raw = await request.body()
        try:
            body = await request.json() if raw.strip() else {}
        except ValueError:
            return _error_response(ValidationError("Request body must be JSON"))
        if not isinstance(body, dict):
            return _error_response(ValidationError("Request body must be a JSON object"))

        body_key = _pop_str(body, "idempotency_key")
        body_approval = _pop_str(body, "approval_token")
        headers = request.headers
        invocation = InvocationRequest(
            tool=capability.name,
            body=body,
            tenant_id=(headers.get(TENANT_HEADER) or "").strip() or None,
            authorization=headers.get("authorization"),
            idempotency_key=headers.get(IDEMPOTENCY_HEADER) or body_key,
            approval_token=headers.get(APPROVAL_HEADER) or body_approval,
            correlation_id=getattr(request.state, "correlation_id", None),
        )
        result = await request.app.state.pipeline.invoke(invocation, runtime)
        return JSONResponse(result.payload, status_code=result.status_code, headers=result.headers)

    return app

