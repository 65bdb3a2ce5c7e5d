"""
W3C Trace Context and correlation ids for the actions gateway.

Every tool call carries a correlation id: taken from ``x-correlation-id``
(or ``x-call-id``) when the caller sends one, generated otherwise, and echoed
on the response. The same id travels to tenant connectors alongside a
traceparent header.
"""

from __future__ import annotations

import random
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional, Tuple

TRACEPARENT_HEADER = "traceparent"
TRACESTATE_HEADER = "tracestate"
CORRELATION_ID_HEADER = "x-correlation-id"
CALL_ID_HEADER = "x-call-id"

TRACE_VERSION = "00"

_trace_context: ContextVar[Dict[str, Any]] = ContextVar("trace_context", default={})


def generate_trace_id() -> str:
    """32 hex chars (128 bits)."""
    return f"{random.getrandbits(128):032x}"


def generate_span_id() -> str:
    """16 hex chars (64 bits)."""
    return f"{random.getrandbits(64):016x}"


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def _is_hex(value: str) -> bool:
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


def parse_traceparent(header: str) -> Optional[Tuple[str, str, str, str]]:
    """
    Parse a W3C traceparent header.

    Format: {version}-{trace-id}-{parent-id}-{trace-flags}
    Example: 00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01

    Returns (version, trace_id, parent_id, trace_flags) or None if invalid.
    """
    parts = header.strip().split("-")
    if len(parts) != 4:
        return None
    version, trace_id, parent_id, trace_flags = parts
    if len(version) != 2 or len(trace_flags) != 2:
        return None
    if len(trace_id) != 32 or trace_id == "0" * 32:
        return None
    if len(parent_id) != 16 or parent_id == "0" * 16:
        return None
    if not all(_is_hex(p) for p in parts):
        return None
    return version, trace_id, parent_id, trace_flags


def create_traceparent(trace_id: str, span_id: str, sampled: bool = True) -> str:
    trace_flags = "01" if sampled else "00"
    return f"{TRACE_VERSION}-{trace_id}-{span_id}-{trace_flags}"


def get_current_context() -> Dict[str, Any]:
    return _trace_context.get()


def set_current_context(ctx: Dict[str, Any]) -> None:
    _trace_context.set(ctx)


def create_context(
    traceparent: Optional[str] = None,
    tracestate: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """New trace context, continuing the caller's trace when traceparent parses."""
    parsed = parse_traceparent(traceparent) if traceparent else None
    if parsed:
        _, trace_id, parent_span_id, trace_flags = parsed
        sampled = trace_flags[-1] == "1"
    else:
        trace_id = generate_trace_id()
        parent_span_id = None
        sampled = True

    return {
        "trace_id": trace_id,
        "span_id": generate_span_id(),
        "parent_span_id": parent_span_id,
        "sampled": sampled,
        "tracestate": tracestate or "",
        "correlation_id": correlation_id or generate_correlation_id(),
    }


def context_from_headers(headers: Mapping[str, str]) -> Dict[str, Any]:
    """Build (and install) the trace context for an incoming request."""
    correlation_id = headers.get(CORRELATION_ID_HEADER) or headers.get(CALL_ID_HEADER)
    ctx = create_context(
        traceparent=headers.get(TRACEPARENT_HEADER),
        tracestate=headers.get(TRACESTATE_HEADER),
        correlation_id=correlation_id.strip() if correlation_id else None,
    )
    set_current_context(ctx)
    return ctx


def get_propagation_headers(ctx: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """Headers for outgoing connector requests; each call gets a fresh span."""
    ctx = ctx or get_current_context()
    if not ctx:
        ctx = create_context()

    headers = {
        TRACEPARENT_HEADER: create_traceparent(
            ctx.get("trace_id", generate_trace_id()),
            generate_span_id(),
            ctx.get("sampled", True),
        ),
        CORRELATION_ID_HEADER: ctx.get("correlation_id", generate_correlation_id()),
    }
    if ctx.get("tracestate"):
        headers[TRACESTATE_HEADER] = ctx["tracestate"]
    return headers
