from datetime import timedelta

import pytest

from quoteflow import db
from quoteflow.errors import (
    InvalidStepState,
    NotFound,
    StaleChain,
    StaleRevision,
    Unauthorized,
    ValidationError,
)
from quoteflow.models.approval_chain import ApprovalChain, ApprovalStep
from quoteflow.models.quotation import Quotation
from quoteflow.services import approval, workflow

from conftest import ITEMS, PARALLEL_STEPS, SEQUENTIAL_STEPS, T0


def _submit(draft, users, steps):
    return workflow.submit_for_approval(
        draft.id, steps, actor_id=users["sales"], expected_version=draft.version, now=T0
    )


def _decisions(chain_id):
    chain = db.session.get(ApprovalChain, chain_id)
    return [step.decision for step in chain.steps]


def test_sequential_chain_approves_quotation(pending, users):
    quotation, chain = pending
    first = workflow.submit_approval_decision(chain.id, 0, users["manager"], "approve", now=T0)
    assert first.quotation.status == "pending_approval"
    assert [e["event_type"] for e in first.events] == ["approval.step_decided"]

    second = workflow.submit_approval_decision(chain.id, 1, users["finance"], "approve", now=T0)
    assert second.quotation.status == "approved"
    assert second.chain.verdict == "approved"
    assert [e["event_type"] for e in second.events] == ["approval.step_decided", "quotation.approved"]


def test_later_step_waits_for_earlier_index(pending, users):
    _, chain = pending
    with pytest.raises(InvalidStepState):
        workflow.submit_approval_decision(chain.id, 1, users["finance"], "approve", now=T0)
    assert _decisions(chain.id) == ["pending", "pending"]


def test_rejection_skips_remaining_steps_and_returns_to_draft(pending, users):
    quotation, chain = pending
    result = workflow.submit_approval_decision(
        chain.id, 0, users["manager"], "reject", comment="margin too low", now=T0
    )
    assert result.chain.verdict == "rejected"
    assert result.chain.rejection_comment == "margin too low"
    assert _decisions(chain.id) == ["rejected", "skipped"]
    assert result.quotation.status == "draft"
    assert result.quotation.rejection_reason == "margin too low"
    assert "quotation.approval_rejected" in [e["event_type"] for e in result.events]


def test_parallel_steps_need_every_approval(draft, users):
    chain = _submit(draft, users, PARALLEL_STEPS).chain
    first = workflow.submit_approval_decision(chain.id, 0, users["finance"], "approve", now=T0)
    assert first.chain.verdict == "pending"
    second = workflow.submit_approval_decision(chain.id, 0, users["manager"], "approve", now=T0)
    assert second.chain.verdict == "approved"
    assert second.quotation.status == "approved"


def test_parallel_rejection_after_approval_rejects_chain(draft, users):
    chain = _submit(draft, users, PARALLEL_STEPS + [{"step_index": 1, "required_roles": ["legal"]}]).chain
    workflow.submit_approval_decision(chain.id, 0, users["manager"], "approve", now=T0)
    result = workflow.submit_approval_decision(chain.id, 0, users["finance"], "reject", comment="no", now=T0)
    assert result.chain.verdict == "rejected"
    assert _decisions(chain.id) == ["approved", "rejected", "skipped"]


def test_verdict_does_not_depend_on_decision_order():
    def steps(*decisions):
        return [ApprovalStep(step_index=0, required=True, decision=d) for d in decisions]

    assert approval.compute_verdict(steps("approved", "approved")) == "approved"
    assert approval.compute_verdict(steps("approved", "rejected")) == "rejected"
    assert approval.compute_verdict(steps("rejected", "approved")) == "rejected"
    assert approval.compute_verdict(steps("approved", "pending")) == "pending"
    optional = ApprovalStep(step_index=1, required=False, decision="pending")
    assert approval.compute_verdict(steps("approved") + [optional]) == "approved"


def test_optional_step_does_not_block(draft, users):
    chain = _submit(draft, users, [
        {"step_index": 0, "required_roles": ["manager"]},
        {"step_index": 0, "required_roles": ["legal"], "required": False},
    ]).chain
    result = workflow.submit_approval_decision(chain.id, 0, users["manager"], "approve", now=T0)
    assert result.chain.verdict == "approved"
    assert _decisions(chain.id) == ["approved", "skipped"]


def test_approver_without_role_is_unauthorized(pending, users):
    _, chain = pending
    with pytest.raises(Unauthorized):
        workflow.submit_approval_decision(chain.id, 0, users["viewer"], "approve", now=T0)
    assert _decisions(chain.id) == ["pending", "pending"]


def test_decided_step_cannot_be_decided_again(pending, users):
    _, chain = pending
    workflow.submit_approval_decision(chain.id, 0, users["manager"], "approve", now=T0)
    with pytest.raises(InvalidStepState):
        workflow.submit_approval_decision(chain.id, 0, users["manager"], "reject", now=T0)


def test_completed_chain_rejects_new_decisions(approved, users):
    chain_id = approved.current_chain_id
    with pytest.raises(InvalidStepState):
        workflow.submit_approval_decision(chain_id, 1, users["finance"], "reject", now=T0)


def test_superseded_chain_is_stale(pending, users):
    quotation, chain = pending
    workflow.submit_approval_decision(chain.id, 0, users["manager"], "approve", now=T0)
    current = db.session.get(Quotation, quotation.id)
    result = workflow.revise(current.id, actor_id=users["sales"], expected_version=current.version)
    assert "approval.chain_superseded" in [e["event_type"] for e in result.events]

    with pytest.raises(StaleChain):
        workflow.submit_approval_decision(chain.id, 1, users["finance"], "approve", now=T0)
    assert db.session.get(ApprovalChain, chain.id).verdict == "superseded"
    assert _decisions(chain.id) == ["approved", "skipped"]


def test_decision_for_other_revision_is_stale(pending, users):
    _, chain = pending
    with pytest.raises(StaleRevision):
        workflow.submit_approval_decision(
            chain.id, 0, users["manager"], "approve", revision_version=chain.revision_version + 1, now=T0
        )


def test_unknown_decision_value(pending, users):
    _, chain = pending
    with pytest.raises(ValidationError):
        workflow.submit_approval_decision(chain.id, 0, users["manager"], "maybe", now=T0)


@pytest.mark.parametrize("steps", [
    [],
    [{"step_index": 0, "required_roles": []}],
    [{"step_index": -1, "required_roles": ["manager"]}],
    [{"step_index": 0, "required_roles": ["manager"], "required": False}],
])
def test_invalid_chain_definitions(draft, users, steps):
    with pytest.raises(ValidationError):
        _submit(draft, users, steps)
    quotation = db.session.get(Quotation, draft.id)
    assert quotation.status == "draft"
    assert quotation.version == 1
    assert ApprovalChain.query.count() == 0


def test_chain_is_bound_to_submitted_revision(pending):
    quotation, chain = pending
    assert chain.revision_version == quotation.current_revision_version


def test_overdue_step_rejects_chain(draft, users):
    chain = _submit(draft, users, [
        {"step_index": 0, "required_roles": ["manager"], "deadline": T0 + timedelta(hours=1)},
    ]).chain
    result = workflow.evaluate_expired(now=T0 + timedelta(hours=2))
    assert result["timed_out_chains"] == [chain.id]

    chain = db.session.get(ApprovalChain, chain.id)
    assert chain.verdict == "rejected"
    assert chain.steps[0].comment == approval.DEADLINE_COMMENT
    quotation = db.session.get(Quotation, draft.id)
    assert quotation.status == "draft"
    assert quotation.rejection_reason == approval.DEADLINE_COMMENT


def test_step_not_yet_due_is_left_alone(draft, users):
    chain = _submit(draft, users, [
        {"step_index": 0, "required_roles": ["manager"], "deadline_hours": 48},
    ]).chain
    result = workflow.evaluate_expired(now=T0 + timedelta(hours=47))
    assert result["timed_out_chains"] == []
    assert db.session.get(ApprovalChain, chain.id).verdict == "pending"


def test_pending_approvals_for_roles(pending, users):
    _, chain = pending
    manager_steps = approval.pending_approvals_for({"manager"})
    assert [(s.chain_id, s.step_index) for s in manager_steps] == [(chain.id, 0)]
    # 財務のステップはまだ順番が来ていない
    assert approval.pending_approvals_for({"finance"}) == []

    workflow.submit_approval_decision(chain.id, 0, users["manager"], "approve", now=T0)
    assert [s.step_index for s in approval.pending_approvals_for({"finance"})] == [1]


def test_non_integer_revision_version_is_a_validation_error(pending, users):
    _, chain = pending
    with pytest.raises(ValidationError) as excinfo:
        workflow.submit_approval_decision(chain.id, 0, users["manager"], "approve", revision_version="abc", now=T0)
    assert excinfo.value.details["field"] == "revision_version"
    assert _decisions(chain.id) == ["pending", "pending"]


def _second_pending_chain(users, steps):
    other = workflow.create_quotation("Second", items=ITEMS, actor_id=users["sales"], now=T0).quotation
    return workflow.submit_for_approval(
        other.id, steps, actor_id=users["sales"], expected_version=other.version, now=T0
    ).chain


def test_sweep_continues_after_a_failing_step(draft, users, monkeypatch):
    steps = [{"step_index": 0, "required_roles": ["manager"], "deadline": T0 + timedelta(hours=1)}]
    first = _submit(draft, users, steps).chain
    second = _second_pending_chain(users, steps)
    failing_step_id = first.steps[0].id
    second_id = second.id

    time_out_step = approval.time_out_step

    def failing_time_out(step_id, now=None):
        if step_id == failing_step_id:
            raise NotFound(f"approval step {step_id} not found")
        return time_out_step(step_id, now)

    monkeypatch.setattr(approval, "time_out_step", failing_time_out)
    result = workflow.evaluate_expired(now=T0 + timedelta(hours=2))
    assert result["skipped_steps"] == [failing_step_id]
    assert result["timed_out_chains"] == [second_id]
    assert db.session.get(ApprovalChain, second_id).verdict == "rejected"
    assert db.session.get(ApprovalChain, first.id).verdict == "pending"


def test_manager_escalates_pending_chain(pending, users):
    _, chain = pending
    version = chain.version
    result = workflow.escalate_approval(chain.id, users["manager"], reason="client signs on friday", now=T0)
    assert result.chain.urgency == "high"
    assert result.chain.escalated_by == users["manager"]
    assert result.chain.escalation_reason == "client signs on friday"
    assert result.chain.version == version + 1
    assert [e["event_type"] for e in result.events] == ["approval.escalated"]
    assert result.events[0]["metadata"]["urgency"] == "high"

    assert workflow.escalate_approval(chain.id, users["admin"], reason="still waiting", now=T0).chain.urgency == "urgent"
    with pytest.raises(InvalidStepState):
        workflow.escalate_approval(chain.id, users["admin"], reason="once more", now=T0)


def test_escalation_needs_role_and_reason(pending, users):
    _, chain = pending
    with pytest.raises(Unauthorized):
        workflow.escalate_approval(chain.id, users["sales"], reason="hurry up")
    with pytest.raises(ValidationError):
        workflow.escalate_approval(chain.id, users["manager"], reason="   ")
    assert db.session.get(ApprovalChain, chain.id).urgency == "normal"


def test_completed_chain_cannot_be_escalated(approved, users):
    with pytest.raises(InvalidStepState):
        workflow.escalate_approval(approved.current_chain_id, users["manager"], reason="late")


def test_escalated_chains_come_first_for_approvers(draft, users):
    steps = [{"step_index": 0, "required_roles": ["manager"]}]
    first_id = _submit(draft, users, steps).chain.id
    second_id = _second_pending_chain(users, steps).id
    assert [s.chain_id for s in approval.pending_approvals_for({"manager"})] == [first_id, second_id]

    workflow.escalate_approval(second_id, users["admin"], reason="largest deal this quarter", now=T0)
    assert [s.chain_id for s in approval.pending_approvals_for({"manager"})] == [second_id, first_id]


def test_approval_history_keeps_every_chain(pending, users):
    quotation, chain = pending
    first_id = chain.id
    workflow.submit_approval_decision(first_id, 0, users["manager"], "reject", comment="margin too low", now=T0)
    current = db.session.get(Quotation, quotation.id)
    second_id = workflow.submit_for_approval(
        current.id, SEQUENTIAL_STEPS, actor_id=users["sales"], expected_version=current.version, now=T0
    ).chain.id

    history = workflow.get_approval_history(quotation.id)
    assert [c.id for c in history] == [first_id, second_id]
    assert [c.verdict for c in history] == ["rejected", "pending"]
    assert history[0].steps[0].comment == "margin too low"
    with pytest.raises(NotFound):
        workflow.get_approval_history(9999)
