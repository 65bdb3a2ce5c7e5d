from __future__ import annotations

from actions_gateway.policy import APPROVED, DENIED, NEEDS_APPROVAL, SUPERVISOR_APPROVAL, evaluate

POLICY = {
    "escalate_case": {
        "allowed_queues": ["tier2_us"],
        "needs_approval_queues": ["tier3_legal"],
    },
    "update_case": {
        "priority": {"deny": ["urgent"], "needs_approval": ["high"]},
    },
}


def test_escalation_to_allowed_queue_is_approved() -> None:
    decision = evaluate(POLICY, "escalate_case", {"id": "case_1", "queue": "tier2_us"})
    assert decision.status == APPROVED
    assert decision.approved


def test_escalation_to_approval_queue_needs_supervisor() -> None:
    decision = evaluate(POLICY, "escalate_case", {"id": "case_1", "queue": "tier3_legal"})
    assert decision.status == NEEDS_APPROVAL
    assert decision.required_steps == [SUPERVISOR_APPROVAL]


def test_escalation_to_other_queue_is_denied() -> None:
    decision = evaluate(POLICY, "escalate_case", {"id": "case_1", "queue": "billing"})
    assert decision.status == DENIED
    assert decision.reason == "queue not allowed"


def test_escalation_without_allowlist_is_approved() -> None:
    policy = {"escalate_case": {"needs_approval_queues": ["tier3_legal"]}}
    assert evaluate(policy, "escalate_case", {"queue": "anything"}).status == APPROVED


def test_denied_priority_on_update() -> None:
    decision = evaluate(POLICY, "update_case", {"id": "case_1", "priority": "urgent"})
    assert decision.status == DENIED
    assert decision.reason == "priority not allowed"


def test_priority_needing_approval_on_update() -> None:
    decision = evaluate(POLICY, "update_case", {"id": "case_1", "priority": "high"})
    assert decision.status == NEEDS_APPROVAL
    assert decision.required_steps == [SUPERVISOR_APPROVAL]


def test_update_without_priority_is_approved() -> None:
    assert evaluate(POLICY, "update_case", {"id": "case_1", "status": "solved"}).status == APPROVED


def test_missing_document_and_unknown_action_are_approved() -> None:
    assert evaluate(None, "escalate_case", {"queue": "billing"}).status == APPROVED
    assert evaluate({}, "update_case", {"priority": "urgent"}).status == APPROVED
    assert evaluate(POLICY, "close_case", {"id": "case_1"}).status == APPROVED
