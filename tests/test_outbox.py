from __future__ import annotations

import asyncio

import pytest

from actions_gateway.outbox import JsonlOutbox, OutboxEvent, SqlOutbox, build_outbox
from actions_gateway.storage import create_sql_engine


def _event(n: int) -> OutboxEvent:
    return OutboxEvent(
        tenant_id="demo",
        tool="crm.create_case",
        payload={"request": {"n": n}, "result": {"case": {"id": f"case_{n}"}}},
        correlation_id=f"corr-{n}",
    )


@pytest.mark.asyncio
async def test_jsonl_outbox_appends_one_line_per_event(tmp_path) -> None:
    outbox = JsonlOutbox(tmp_path / "nested" / "outbox.jsonl")
    await asyncio.gather(*(outbox.append(_event(n)) for n in range(20)))

    events = await outbox.read_all()
    assert len(events) == 20
    assert sorted(e["payload"]["request"]["n"] for e in events) == list(range(20))
    assert all(e["tenant_id"] == "demo" for e in events)


@pytest.mark.asyncio
async def test_sql_outbox_keeps_order(tmp_path) -> None:
    engine = await create_sql_engine(f"sqlite:///{tmp_path / 'gateway.db'}")
    try:
        outbox = build_outbox(engine, None)
        assert isinstance(outbox, SqlOutbox)
        for n in range(3):
            await outbox.append(_event(n))
        events = await outbox.read_all()
        assert [e["correlation_id"] for e in events] == ["corr-0", "corr-1", "corr-2"]
        assert events[2]["payload"]["result"]["case"]["id"] == "case_2"
    finally:
        await engine.dispose()


def test_build_outbox_falls_back_to_file(tmp_path) -> None:
    outbox = build_outbox(None, tmp_path / "outbox.jsonl")
    assert isinstance(outbox, JsonlOutbox)
    assert outbox.path == tmp_path / "outbox.jsonl"
