"""
Approval token verification for policy-gated write tools.

When a policy answers needs_approval, the caller resubmits with an approval
token in the ``x-approval-token`` header (or ``approval_token`` in the body).

Token format: JWT HS256, signed with ACTIONS_APPROVAL_JWT_SECRET.

JWT claims:
  - iss: "actions-platform"
  - aud: "actions-gateway"
  - sub: caller subject
  - tid: tenant_id
  - tool: exact tool name
  - approval_id: approval flow id
  - exp / iat: short lived (5 min default)
  - jti: random id (replay detection)

Without a configured secret, token verification is left to the upstream
approval service and a present token is accepted as-is.
"""
from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import jwt

logger = logging.getLogger("actions_gateway.approval")

ISSUER = "actions-platform"
AUDIENCE = "actions-gateway"
_JTI_TTL_SECONDS = 600


@dataclass
class ApprovalTokenClaims:
    """Parsed and verified approval token claims."""
    subject: str
    tenant_id: str
    tool_name: str
    approval_id: str
    jti: str
    iat: float
    exp: float


class ApprovalVerifier:
    def __init__(self, secret: Optional[str] = None) -> None:
        self._secret = secret if secret is not None else os.getenv("ACTIONS_APPROVAL_JWT_SECRET", "").strip()
        self._jti_cache: Dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def enforcing(self) -> bool:
        return bool(self._secret)

    def _check_jti_replay(self, jti: str, exp_time: float) -> bool:
        """True if the JTI is new, False if it was already used."""
        now = time.time()
        with self._lock:
            for key in [k for k, exp in self._jti_cache.items() if exp < now]:
                del self._jti_cache[key]
            if jti in self._jti_cache:
                logger.warning(f"[Approval] Replay detected: JTI {jti[:8]}... already used")
                return False
            self._jti_cache[jti] = max(exp_time, now + _JTI_TTL_SECONDS)
        return True

    def release(self, jti: str) -> None:
        """Forget a JTI whose call never completed, so the same token can be retried."""
        with self._lock:
            self._jti_cache.pop(jti, None)

    def verify(
        self,
        token: str,
        expected_tool: str,
        tenant_id: str,
        subject: str,
    ) -> Tuple[bool, str, Optional[ApprovalTokenClaims]]:
        """
        Verify an approval token for one tool call.

        Returns (ok, reason, claims); reason is an error code when not ok.
        """
        if not token:
            return False, "approval_token_missing", None
        if not self._secret:
            logger.debug(f"[Approval] No secret configured, accepting token for {expected_tool}")
            return True, "", None

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=["HS256"],
                audience=AUDIENCE,
                issuer=ISSUER,
                options={"require": ["exp", "iat", "jti"]},
            )
        except jwt.ExpiredSignatureError:
            logger.warning("[Approval] Token expired")
            return False, "approval_token_expired", None
        except jwt.InvalidTokenError as e:
            logger.warning(f"[Approval] Invalid token: {e}")
            return False, "approval_token_invalid", None

        token_tool = claims.get("tool", "")
        if token_tool != expected_tool:
            logger.warning(f"[Approval] Tool mismatch: token={token_tool}, expected={expected_tool}")
            return False, "approval_token_tool_mismatch", None

        token_tenant_id = claims.get("tid", "")
        if token_tenant_id != tenant_id:
            logger.warning(f"[Approval] Tenant mismatch: token={token_tenant_id}, expected={tenant_id}")
            return False, "approval_token_tenant_mismatch", None

        token_subject = claims.get("sub", "")
        if token_subject != subject:
            logger.warning(f"[Approval] Subject mismatch for tool {expected_tool}")
            return False, "approval_token_subject_mismatch", None

        jti = str(claims.get("jti", ""))
        exp_time = float(claims.get("exp", 0))
        if not self._check_jti_replay(jti, exp_time):
            return False, "approval_token_replay_detected", None

        parsed = ApprovalTokenClaims(
            subject=token_subject,
            tenant_id=token_tenant_id,
            tool_name=token_tool,
            approval_id=str(claims.get("approval_id", "")),
            jti=jti,
            iat=float(claims.get("iat", 0)),
            exp=exp_time,
        )
        logger.info(
            f"[Approval] Token verified: tool={expected_tool}, tenant={tenant_id}, "
            f"approval_id={parsed.approval_id}, jti={jti[:8]}..."
        )
        return True, "", parsed


def generate_approval_token(
    secret: str,
    subject: str,
    tenant_id: str,
    tool_name: str,
    approval_id: str,
    ttl_seconds: int = 300,
) -> str:
    """
    Issue an approval token. Production tokens come from the approval flow
    service; this is for tests and internal tooling.
    """
    now = int(time.time())
    claims = {
        "iss": ISSUER,
        "aud": AUDIENCE,
        "sub": subject,
        "tid": tenant_id,
        "tool": tool_name,
        "approval_id": approval_id,
        "exp": now + ttl_seconds,
        "iat": now,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(claims, secret, algorithm="HS256")
