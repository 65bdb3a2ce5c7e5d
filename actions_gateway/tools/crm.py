"""
CRM tool handlers.

Tenants with a ``connectors.crm.base_url`` get their calls forwarded to that
backend; otherwise a deterministic stub answers, which is enough for voice
flows that only need stable ids.
"""
from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from ..errors import ProviderUnavailable, UnknownTenantError
from ..registry import HandlerContext
from ..trace_context import get_propagation_headers

logger = logging.getLogger("actions_gateway.tools.crm")

_PHONE_RE = re.compile(r"^\+?\d{10,}$")


class BackendError(ProviderUnavailable):
    """CRM backend errors."""


def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _require_tenant(ctx: HandlerContext) -> None:
    if not ctx.tenant.known:
        raise UnknownTenantError("Unknown tenant", details={"tenant_id": ctx.tenant.tenant_id})


def _connector_url(ctx: HandlerContext) -> Optional[str]:
    crm_cfg = ctx.tenant.connectors.get("crm") or {}
    base = crm_cfg.get("base_url") if isinstance(crm_cfg, dict) else crm_cfg
    return str(base).rstrip("/") if base else None


async def _forward(ctx: HandlerContext, action: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """POST to the tenant's CRM connector. None when no connector is configured."""
    base = _connector_url(ctx)
    if base is None:
        return None
    if ctx.http is None:
        raise BackendError("No HTTP client available for CRM connector")
    headers = get_propagation_headers()
    headers["x-tenant-id"] = ctx.tenant.tenant_id
    try:
        response = await ctx.http.post(f"{base}/{action}", json=payload, headers=headers)
    except httpx.HTTPError as exc:
        raise BackendError(f"CRM backend unreachable: {exc}") from exc
    if response.status_code == 429:
        raise BackendError("Upstream rate limit")
    if response.status_code >= 500:
        raise BackendError(f"Upstream crm error {response.status_code}")
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise BackendError(f"CRM backend rejected {action}: {response.status_code}") from exc
    data = response.json()
    return data if isinstance(data, dict) else {"result": data}


def infer_match_quality(query: str) -> str:
    if _PHONE_RE.match(query) or "@" in query:
        return "strong"
    if len(query) > 3:
        return "fuzzy"
    return "none"


def infer_identifiers(query: str) -> Dict[str, str]:
    if "@" in query:
        return {"email": query}
    if _PHONE_RE.match(query):
        return {"phone": query}
    return {"customer_number": query}


async def lookup_customer(ctx: HandlerContext, body: Dict[str, Any]) -> Dict[str, Any]:
    _require_tenant(ctx)
    forwarded = await _forward(ctx, "lookup_customer", body)
    if forwarded is not None:
        return forwarded
    query = str(body["query"])
    return {
        "match_quality": infer_match_quality(query),
        "customer": {
            "id": f"cust_{_short_hash(query)}",
            "identifiers": infer_identifiers(query),
            "primary_contact": {"name": "Unknown", "phones": [], "emails": []},
            "external_ids": [],
            "attributes": {},
            "entitlements": [],
            "segments": [],
        },
    }


async def create_case(ctx: HandlerContext, body: Dict[str, Any]) -> Dict[str, Any]:
    _require_tenant(ctx)
    forwarded = await _forward(ctx, "create_case", body)
    if forwarded is not None:
        return forwarded
    case = {
        "id": f"case_{_short_hash(body['customer_id'] + ':' + body['subject'])}",
        "subject": body["subject"],
        "status": "new",
        "priority": body.get("priority") or "normal",
        "customer_id": body["customer_id"],
        "tags": list(body.get("tags") or []),
        "custom_fields": {},
    }
    return {"case": case}


async def add_note(ctx: HandlerContext, body: Dict[str, Any]) -> Dict[str, Any]:
    _require_tenant(ctx)
    forwarded = await _forward(ctx, "add_note", body)
    if forwarded is not None:
        return forwarded
    note = {
        "id": f"note_{_short_hash(body['case_id'] + ':' + body['body'])}",
        "case_id": body["case_id"],
        "channel": "voice",
        "body": body["body"],
        "visibility": body.get("visibility") or "internal",
        "author": body.get("author") or "system",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return {"note": note}


async def update_case(ctx: HandlerContext, body: Dict[str, Any]) -> Dict[str, Any]:
    _require_tenant(ctx)
    forwarded = await _forward(ctx, "update_case", body)
    if forwarded is not None:
        return forwarded
    case: Dict[str, Any] = {
        "id": body["id"],
        "subject": body.get("subject") or "Updated",
        "status": body.get("status") or "open",
        "priority": body.get("priority") or "normal",
        "customer_id": "unknown",
        "tags": list(body.get("tags") or []),
        "custom_fields": dict(body.get("custom_fields") or {}),
    }
    if body.get("assigned_queue"):
        case["assigned_queue"] = body["assigned_queue"]
    return {"case": case}


async def escalate_case(ctx: HandlerContext, body: Dict[str, Any]) -> Dict[str, Any]:
    _require_tenant(ctx)
    forwarded = await _forward(ctx, "escalate_case", body)
    if forwarded is not None:
        return forwarded
    case = {
        "id": body["id"],
        "subject": "Escalated",
        "status": "open",
        "priority": "high",
        "customer_id": "unknown",
        "assigned_queue": body["queue"],
        "tags": [],
        "custom_fields": {"escalated": True},
    }
    return {"case": case}
