from __future__ import annotations

import json

import httpx
import pytest

from actions_gateway.client import ActionsClient, ActionsClientError


def _client(handler) -> ActionsClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ActionsClient("http://gateway/", token="tok", tenant_id="demo", http=http)


@pytest.mark.asyncio
async def test_write_call_sends_gateway_headers() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = dict(request.headers)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"case": {"id": "case_1"}})

    async with _client(handler) as client:
        result = await client.create_case("cust_1", "Printer on fire", idempotency_key="k-1")

    assert result == {"case": {"id": "case_1"}}
    assert seen["url"] == "http://gateway/tools/crm/create_case"
    assert seen["headers"]["authorization"] == "Bearer tok"
    assert seen["headers"]["x-tenant-id"] == "demo"
    assert seen["headers"]["idempotency-key"] == "k-1"
    assert seen["body"] == {"customer_id": "cust_1", "subject": "Printer on fire"}


@pytest.mark.asyncio
async def test_write_helpers_generate_an_idempotency_key() -> None:
    keys = []

    def handler(request: httpx.Request) -> httpx.Response:
        keys.append(request.headers.get("idempotency-key"))
        return httpx.Response(200, json={"note": {}})

    async with _client(handler) as client:
        await client.add_note("case_1", "called back")
        await client.add_note("case_1", "called back")

    assert all(keys)
    assert keys[0] != keys[1]


@pytest.mark.asyncio
async def test_error_envelope_is_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            202, json={"error": {"type": "PermissionDenied", "message": "Approval required"}}
        )

    async with _client(handler) as client:
        with pytest.raises(ActionsClientError) as excinfo:
            await client.escalate_case("case_1", "tier3_legal")

    assert excinfo.value.status == 202
    assert excinfo.value.error_type == "PermissionDenied"
    assert "Approval required" in str(excinfo.value)


@pytest.mark.asyncio
async def test_non_json_error_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    async with _client(handler) as client:
        with pytest.raises(ActionsClientError) as excinfo:
            await client.lookup_customer("+15551234567")

    assert excinfo.value.body == "bad gateway"
    assert excinfo.value.error_type is None
