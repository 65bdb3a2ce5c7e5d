"""
Async client for the actions gateway tool endpoints.
"""
from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

import httpx


class ActionsClientError(Exception):
    """Non-2xx answer from the gateway. ``body`` holds the decoded error envelope."""

    def __init__(self, status: int, body: Any) -> None:
        self.status = status
        self.body = body
        message = ""
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            message = str(body["error"].get("message", ""))
        super().__init__(f"HTTP {status}: {message}" if message else f"HTTP {status}")

    @property
    def error_type(self) -> Optional[str]:
        if isinstance(self.body, dict) and isinstance(self.body.get("error"), dict):
            return self.body["error"].get("type")
        return None


class ActionsClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        tenant_id: Optional[str] = None,
        timeout: float = 10.0,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._tenant_id = tenant_id
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "ActionsClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _headers(
        self,
        idempotency_key: Optional[str] = None,
        approval_token: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self._token:
            headers["authorization"] = f"Bearer {self._token}"
        if self._tenant_id:
            headers["x-tenant-id"] = self._tenant_id
        if idempotency_key:
            headers["idempotency-key"] = idempotency_key
        if approval_token:
            headers["x-approval-token"] = approval_token
        if correlation_id:
            headers["x-correlation-id"] = correlation_id
        return headers

    async def call(
        self,
        tool: str,
        body: Optional[Dict[str, Any]] = None,
        *,
        idempotency_key: Optional[str] = None,
        approval_token: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """POST to the tool's path. A 202 (approval pending) raises like an error."""
        path = "/tools/" + tool.replace(".", "/")
        response = await self._http.post(
            self._base_url + path,
            json=body or {},
            headers=self._headers(idempotency_key, approval_token, correlation_id),
        )
        try:
            data = response.json()
        except ValueError:
            data = response.text
        if response.status_code != 200:
            raise ActionsClientError(response.status_code, data)
        return data

    async def health(self) -> Dict[str, Any]:
        response = await self._http.get(self._base_url + "/health")
        if response.status_code != 200:
            raise ActionsClientError(response.status_code, response.text)
        return response.json()

    async def lookup_customer(self, query: str, **extra: Any) -> Dict[str, Any]:
        return await self.call("crm.lookup_customer", {"query": query, **extra})

    async def create_case(
        self,
        customer_id: str,
        subject: str,
        *,
        idempotency_key: Optional[str] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        return await self.call(
            "crm.create_case",
            {"customer_id": customer_id, "subject": subject, **extra},
            idempotency_key=idempotency_key or str(uuid.uuid4()),
        )

    async def add_note(
        self,
        case_id: str,
        body: str,
        *,
        idempotency_key: Optional[str] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        return await self.call(
            "crm.add_note",
            {"case_id": case_id, "body": body, **extra},
            idempotency_key=idempotency_key or str(uuid.uuid4()),
        )

    async def update_case(
        self,
        case_id: str,
        *,
        idempotency_key: Optional[str] = None,
        approval_token: Optional[str] = None,
        **fields: Any,
    ) -> Dict[str, Any]:
        return await self.call(
            "crm.update_case",
            {"id": case_id, **fields},
            idempotency_key=idempotency_key or str(uuid.uuid4()),
            approval_token=approval_token,
        )

    async def escalate_case(
        self,
        case_id: str,
        queue: str,
        *,
        idempotency_key: Optional[str] = None,
        approval_token: Optional[str] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        return await self.call(
            "crm.escalate_case",
            {"id": case_id, "queue": queue, **extra},
            idempotency_key=idempotency_key or str(uuid.uuid4()),
            approval_token=approval_token,
        )
