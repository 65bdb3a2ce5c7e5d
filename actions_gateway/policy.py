"""
Policy evaluation for sensitive write actions.

Policy documents are per tenant and keyed by action name:

    escalate_case:
      allowed_queues: [tier2_us]
      needs_approval_queues: [tier3_legal]
    update_case:
      priority:
        deny: [urgent]
        needs_approval: [high]

evaluate() is pure: no I/O, no clock.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

APPROVED = "approved"
NEEDS_APPROVAL = "needs_approval"
DENIED = "denied"

SUPERVISOR_APPROVAL = "supervisor_approval"


@dataclass(frozen=True)
class PolicyDecision:
    status: str
    reason: Optional[str] = None
    required_steps: List[str] = field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.status == APPROVED


def _as_list(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def check_escalate_case(rules: Mapping[str, Any], payload: Mapping[str, Any]) -> PolicyDecision:
    queue = str(payload.get("queue", ""))
    allowed = _as_list(rules.get("allowed_queues"))
    if allowed is None or queue in allowed:
        return PolicyDecision(APPROVED)
    needs = _as_list(rules.get("needs_approval_queues")) or []
    if queue in needs:
        return PolicyDecision(NEEDS_APPROVAL, reason="queue requires approval", required_steps=[SUPERVISOR_APPROVAL])
    return PolicyDecision(DENIED, reason="queue not allowed")


def check_update_case(rules: Mapping[str, Any], payload: Mapping[str, Any]) -> PolicyDecision:
    priority = payload.get("priority")
    if not priority:
        return PolicyDecision(APPROVED)
    priority_rules = rules.get("priority") or {}
    if priority in (_as_list(priority_rules.get("deny")) or []):
        return PolicyDecision(DENIED, reason="priority not allowed")
    if priority in (_as_list(priority_rules.get("needs_approval")) or []):
        return PolicyDecision(NEEDS_APPROVAL, reason="priority requires approval", required_steps=[SUPERVISOR_APPROVAL])
    return PolicyDecision(APPROVED)


CHECKS: Dict[str, Callable[[Mapping[str, Any], Mapping[str, Any]], PolicyDecision]] = {
    "escalate_case": check_escalate_case,
    "update_case": check_update_case,
}


def evaluate(policy_document: Optional[Mapping[str, Any]], action: str, payload: Mapping[str, Any]) -> PolicyDecision:
    """Decide whether ``action`` with ``payload`` may proceed under the tenant's policy."""
    check = CHECKS.get(action)
    rules = (policy_document or {}).get(action)
    if check is None or not rules:
        return PolicyDecision(APPROVED)
    return check(rules, payload)
