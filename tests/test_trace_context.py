from __future__ import annotations

from actions_gateway.trace_context import (
    context_from_headers,
    create_traceparent,
    get_propagation_headers,
    parse_traceparent,
)

VALID = "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"


def test_parse_traceparent() -> None:
    assert parse_traceparent(VALID) == ("00", "0af7651916cd43dd8448eb211c80319c", "b7ad6b7169203331", "01")
    assert parse_traceparent("00-" + "0" * 32 + "-b7ad6b7169203331-01") is None
    assert parse_traceparent("00-zzf7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01") is None
    assert parse_traceparent("garbage") is None


def test_context_continues_incoming_trace() -> None:
    ctx = context_from_headers({"traceparent": VALID, "x-correlation-id": " call-7 "})
    assert ctx["trace_id"] == "0af7651916cd43dd8448eb211c80319c"
    assert ctx["parent_span_id"] == "b7ad6b7169203331"
    assert ctx["correlation_id"] == "call-7"


def test_call_id_header_fallback_and_generation() -> None:
    assert context_from_headers({"x-call-id": "abc"})["correlation_id"] == "abc"
    generated = context_from_headers({})["correlation_id"]
    assert generated
    assert context_from_headers({})["correlation_id"] != generated


def test_propagation_headers_use_new_span() -> None:
    ctx = context_from_headers({"traceparent": VALID, "x-correlation-id": "call-9"})
    headers = get_propagation_headers()
    parsed = parse_traceparent(headers["traceparent"])
    assert parsed is not None
    assert parsed[1] == ctx["trace_id"]
    assert parsed[2] != "b7ad6b7169203331"
    assert headers["x-correlation-id"] == "call-9"
    assert create_traceparent("a" * 32, "b" * 16, sampled=False).endswith("-00")
