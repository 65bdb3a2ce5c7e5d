from __future__ import annotations

import asyncio

import pytest

from actions_gateway.approval import ApprovalVerifier, generate_approval_token
from actions_gateway.cache import build_cache
from actions_gateway.circuit_breaker import CLOSED, CircuitBreaker
from actions_gateway.config import build_snapshot
from actions_gateway.idempotency import IdempotencyStore, build_idempotency_store
from actions_gateway.observability import InMemoryMetrics
from actions_gateway.outbox import JsonlOutbox
from actions_gateway.pipeline import InvocationPipeline, InvocationRequest
from actions_gateway.rate_limits import TokenBucketLimiter
from actions_gateway.registry import GatewayRuntime
from actions_gateway.security import AuthBackend, AuthConfig
from actions_gateway.tools import DEFAULT_HANDLERS, crm


class HangingOutbox:
    async def append(self, event) -> None:
        await asyncio.Event().wait()


class FailingOutbox:
    async def append(self, event) -> None:
        raise OSError("disk full")


class FailingIdempotencyStore:
    async def get(self, tenant_id, tool, key):
        return None

    async def set(self, tenant_id, tool, key, record):
        raise RuntimeError("store down")


class BrokenBackend:
    name = "broken"

    async def get(self, tenant_id, tool, key):
        raise ConnectionError("db down")

    async def set(self, tenant_id, tool, key, record):
        raise ConnectionError("db down")


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def build(tmp_path, write_config):
    def _build(handlers=None, breaker=None, handler_ms=500, outbox=None, idempotency=None, approvals=None):
        snapshot = build_snapshot(write_config(handler_ms=handler_ms))
        runtime = GatewayRuntime.build(snapshot, dict(DEFAULT_HANDLERS, **(handlers or {})))
        return InvocationPipeline(
            lambda: runtime,
            auth=AuthBackend(AuthConfig(mode="bypass")),
            limiter=TokenBucketLimiter(),
            breaker=breaker or CircuitBreaker(),
            idempotency=idempotency or build_idempotency_store(),
            cache=build_cache(),
            outbox=outbox or JsonlOutbox(tmp_path / "outbox.jsonl"),
            approvals=approvals or ApprovalVerifier(secret=""),
            metrics=InMemoryMetrics(),
        )

    return _build


def _note(key: str = "n1", body: str = "hello") -> InvocationRequest:
    return InvocationRequest(tool="crm.add_note", body={"case_id": "case_1", "body": body}, idempotency_key=key)


@pytest.mark.asyncio
async def test_concurrent_same_key_writes_run_handler_once(build) -> None:
    calls = []

    async def slow_note(ctx, body):
        calls.append(body)
        await asyncio.sleep(0.05)
        return {"note": {"id": "note_1", "case_id": body["case_id"], "body": body["body"], "timestamp": "t"}}

    pipeline = build({"crm.add_note": slow_note})
    results = await asyncio.gather(*(pipeline.invoke(_note()) for _ in range(5)))

    assert len(calls) == 1
    assert all(r.status_code == 200 for r in results)
    assert len({r.payload["note"]["id"] for r in results}) == 1
    assert sum(1 for r in results if r.replayed) == 4


@pytest.mark.asyncio
async def test_handler_timeout_is_provider_unavailable(build) -> None:
    async def hanging(ctx, body):
        await asyncio.sleep(5)

    breaker = CircuitBreaker()
    pipeline = build({"crm.add_note": hanging}, breaker=breaker, handler_ms=50)
    result = await pipeline.invoke(_note())

    assert result.status_code == 503
    assert result.payload["error"]["type"] == "ProviderUnavailable"
    assert result.payload["error"]["details"]["timeout_ms"] == 50
    assert breaker.failure_count("demo") == 1


@pytest.mark.asyncio
async def test_failed_write_is_not_recorded(build, tmp_path) -> None:
    attempts = []

    async def flaky(ctx, body):
        attempts.append(1)
        if len(attempts) == 1:
            raise ConnectionError("crm down")
        return {"note": {"id": "note_1", "case_id": body["case_id"], "body": body["body"], "timestamp": "t"}}

    pipeline = build({"crm.add_note": flaky})
    assert (await pipeline.invoke(_note())).status_code == 503
    retry = await pipeline.invoke(_note())
    assert retry.status_code == 200
    assert retry.replayed is False
    assert len(attempts) == 2
    assert len(await JsonlOutbox(tmp_path / "outbox.jsonl").read_all()) == 1


@pytest.mark.asyncio
async def test_probe_released_when_request_never_dispatches(build) -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(clock=clock)
    for _ in range(5):
        breaker.record_failure("demo")
    clock.now += 10.0

    pipeline = build(breaker=breaker)
    invalid = InvocationRequest(tool="crm.add_note", body={"case_id": "case_1"}, idempotency_key="n1")
    assert (await pipeline.invoke(invalid)).status_code == 400

    # the probe slot is free again; a real call closes the circuit
    assert (await pipeline.invoke(_note())).status_code == 200
    assert breaker.get_state("demo") == CLOSED


@pytest.mark.asyncio
async def test_open_breaker_rejects_before_rate_limit(build) -> None:
    breaker = CircuitBreaker()
    for _ in range(5):
        breaker.record_failure("demo")
    pipeline = build(breaker=breaker)

    result = await pipeline.invoke(InvocationRequest(tool="meta.health", body={}))
    assert result.status_code == 503
    assert result.payload["error"]["message"] == "Circuit open"
    assert result.headers["Retry-After"] == "10"


@pytest.mark.asyncio
async def test_replay_is_output_validated(build) -> None:
    async def note(ctx, body):
        return {"note": {"id": 7}}

    pipeline = build({"crm.add_note": note})
    assert (await pipeline.invoke(_note())).status_code == 500
    replay = await pipeline.invoke(_note())
    assert replay.status_code == 500
    assert "note" not in replay.payload


@pytest.mark.asyncio
async def test_client_errors_from_handler_pass_through(build) -> None:
    breaker = CircuitBreaker()
    pipeline = build(breaker=breaker)
    request = InvocationRequest(tool="crm.add_note", body={"case_id": "c", "body": "b"},
                                idempotency_key="n1", tenant_id="ghost")
    result = await pipeline.invoke(request)
    assert result.status_code == 400
    assert breaker.failure_count("ghost") == 0


@pytest.mark.asyncio
async def test_unknown_tool_name(build) -> None:
    pipeline = build()
    result = await pipeline.invoke(InvocationRequest(tool="crm.nope", body={}))
    assert result.status_code == 404


@pytest.mark.asyncio
async def test_hanging_outbox_does_not_hold_the_response(build) -> None:
    pipeline = build(outbox=HangingOutbox())

    result = await asyncio.wait_for(pipeline.invoke(_note()), 2.0)
    assert result.status_code == 200
    assert result.payload["note"]["case_id"] == "case_1"

    # the idempotency record was written before the outbox stalled
    replay = await asyncio.wait_for(pipeline.invoke(_note()), 2.0)
    assert replay.replayed is True
    assert replay.payload == result.payload


@pytest.mark.asyncio
async def test_failing_outbox_still_answers(build) -> None:
    pipeline = build(outbox=FailingOutbox())
    result = await pipeline.invoke(_note())
    assert result.status_code == 200
    assert result.payload["note"]["body"] == "hello"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "store",
    [FailingIdempotencyStore(), IdempotencyStore([BrokenBackend()], timeout_seconds=0.25)],
    ids=["store-raises", "all-backends-fail"],
)
async def test_failing_idempotency_store_still_answers(build, tmp_path, store) -> None:
    pipeline = build(idempotency=store)
    result = await pipeline.invoke(_note())

    assert result.status_code == 200
    assert result.payload["note"]["case_id"] == "case_1"
    assert len(await JsonlOutbox(tmp_path / "outbox.jsonl").read_all()) == 1


@pytest.mark.asyncio
async def test_approval_token_survives_failed_dispatch(build) -> None:
    secret = "pipeline-approval-secret-0123456789abcdef"
    attempts = []

    async def flaky_escalate(ctx, body):
        attempts.append(1)
        if len(attempts) == 1:
            raise ConnectionError("crm down")
        return await crm.escalate_case(ctx, body)

    pipeline = build({"crm.escalate_case": flaky_escalate}, approvals=ApprovalVerifier(secret=secret))
    token = generate_approval_token(secret, "local-dev", "demo", "crm.escalate_case", "appr-1")

    def _escalate(key: str) -> InvocationRequest:
        return InvocationRequest(
            tool="crm.escalate_case",
            body={"id": "case_1", "queue": "tier3_legal"},
            idempotency_key=key,
            approval_token=token,
        )

    assert (await pipeline.invoke(_escalate("e1"))).status_code == 503
    retry = await pipeline.invoke(_escalate("e1"))
    assert retry.status_code == 200
    assert retry.payload["case"]["assigned_queue"] == "tier3_legal"

    # used once it succeeded
    reuse = await pipeline.invoke(_escalate("e2"))
    assert reuse.status_code == 403
    assert reuse.payload["error"]["details"]["reason"] == "approval_token_replay_detected"
