"""
Error taxonomy for the actions gateway.

Every rejection the pipeline produces is a GatewayError. The error carries
its envelope type, the HTTP status it maps to, and optional retry/detail
information, and renders the wire envelope:

    {"error": {"type": ..., "message": ..., "retry_after_ms": ..., "details": ...}}
"""
from __future__ import annotations

from typing import Any, Dict, Optional


VALIDATION_ERROR = "ValidationError"
PERMISSION_DENIED = "PermissionDenied"
RATE_LIMITED = "RateLimited"
PROVIDER_UNAVAILABLE = "ProviderUnavailable"


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    error_type: str = VALIDATION_ERROR
    status_code: int = 400

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        retry_after_ms: Optional[int] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.retry_after_ms = retry_after_ms
        if status_code is not None:
            self.status_code = status_code

    def to_envelope(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"type": self.error_type, "message": self.message}
        if self.retry_after_ms is not None:
            error["retry_after_ms"] = int(self.retry_after_ms)
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}

    def headers(self) -> Dict[str, str]:
        if self.retry_after_ms is None:
            return {}
        # Retry-After is whole seconds, rounded up
        seconds = max(1, -(-int(self.retry_after_ms) // 1000))
        return {"Retry-After": str(seconds)}


class ValidationError(GatewayError):
    """Client-side input problems (4xx). Never retried by the gateway."""

    error_type = VALIDATION_ERROR
    status_code = 400


class UnknownTenantError(ValidationError):
    pass


class IdempotencyKeyMissingError(ValidationError):
    pass


class IdempotencyConflictError(ValidationError):
    """Idempotency key reused with a different request body."""

    def __init__(self, tool: str, idempotency_key: str) -> None:
        super().__init__(
            "Idempotency-Key was already used for a different request",
            details={"tool": tool, "idempotency_key": idempotency_key},
        )


class UnknownToolError(ValidationError):
    status_code = 404


class OutputContractError(ValidationError):
    """Handler output did not match the declared output schema."""

    status_code = 500


class PermissionDenied(GatewayError):
    error_type = PERMISSION_DENIED
    status_code = 403


class AuthenticationError(PermissionDenied):
    status_code = 401


class ApprovalRequired(PermissionDenied):
    """Policy needs an approval token; the caller must resubmit with one."""

    status_code = 202


class RateLimitError(GatewayError):
    """Rate limit exceeded error."""

    error_type = RATE_LIMITED
    status_code = 429


class ProviderUnavailable(GatewayError):
    """Breaker open or downstream failure."""

    error_type = PROVIDER_UNAVAILABLE
    status_code = 503


class CircuitBreakerError(ProviderUnavailable):
    """Circuit breaker is open - tenant temporarily unavailable."""

    def __init__(self, tenant_id: str, reset_after_ms: int) -> None:
        self.tenant_id = tenant_id
        super().__init__("Circuit open", retry_after_ms=reset_after_ms)


class NotImplementedToolError(ProviderUnavailable):
    status_code = 501
