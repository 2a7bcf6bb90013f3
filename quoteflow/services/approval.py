"""
Approval workflow engine.

A chain is a set of steps bound to one revision of a quotation. Steps run in
ascending step_index order; steps sharing an index are parallel and must all
approve before the chain moves on. The first rejection of a required step
rejects the whole chain and skips whatever is still pending.

This module only mutates the session and flushes. Committing, retrying on a
version conflict and applying the outcome to the quotation is the caller's
job (see services/workflow.py).
"""
from collections import namedtuple
from datetime import datetime, timedelta

from flask import current_app

from quoteflow import db
from quoteflow.errors import (
    InvalidStepState,
    NotFound,
    StaleChain,
    StaleRevision,
    Unauthorized,
    ValidationError,
)
from quoteflow.models.approval_chain import (
    ESCALATION_LEVELS,
    ApprovalChain,
    ApprovalStep,
    ChainVerdict,
    StepDecision,
)

ChainApproved = namedtuple("ChainApproved", "chain_id revision_version")
ChainRejected = namedtuple("ChainRejected", "chain_id revision_version step_index comment")

_DECISION_ALIASES = {
    "approve": StepDecision.APPROVED.value,
    "approved": StepDecision.APPROVED.value,
    "reject": StepDecision.REJECTED.value,
    "rejected": StepDecision.REJECTED.value,
}

DEADLINE_COMMENT = "approval deadline passed"


def _as_int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field=field)


def _parse_roles(raw):
    if isinstance(raw, str):
        raw = raw.split(",")
    return sorted({str(r).strip() for r in (raw or []) if str(r).strip()})


def _parse_deadline(spec, now):
    deadline = spec.get("deadline")
    if isinstance(deadline, datetime):
        return deadline
    if deadline:
        try:
            return datetime.fromisoformat(str(deadline))
        except ValueError:
            raise ValidationError(f"invalid step deadline: {deadline!r}", field="deadline")
    hours = spec.get("deadline_hours")
    if hours not in (None, ""):
        try:
            return now + timedelta(hours=float(hours))
        except (TypeError, ValueError):
            raise ValidationError(f"invalid deadline_hours: {hours!r}", field="deadline_hours")
    return None


def create_chain(quotation, steps, created_by=None, now=None):
    """
    Create a chain for the quotation's current revision.
    steps: [{"step_index": 0, "required_roles": ["manager"], "required": True,
             "deadline": datetime | iso-str, "deadline_hours": 48}, ...]
    """
    now = now or datetime.utcnow()
    if not steps:
        raise ValidationError("approval chain needs at least one step", field="steps")

    chain = ApprovalChain(
        quotation_id=quotation.id,
        revision_version=quotation.current_revision_version,
        verdict=ChainVerdict.PENDING.value,
        version=1,
        created_by=created_by,
    )
    for position, spec in enumerate(steps):
        if not isinstance(spec, dict):
            raise ValidationError(f"step {position} must be an object", field="steps")
        try:
            step_index = int(spec.get("step_index", position))
        except (TypeError, ValueError):
            raise ValidationError(f"step {position}: step_index must be an integer", field="steps")
        if step_index < 0:
            raise ValidationError(f"step {position}: step_index must not be negative", field="steps")
        roles = _parse_roles(spec.get("required_roles", spec.get("roles")))
        if not roles:
            raise ValidationError(f"step {position}: required_roles must not be empty", field="steps")
        chain.steps.append(ApprovalStep(
            position=position,
            step_index=step_index,
            required_roles=",".join(roles),
            required=bool(spec.get("required", True)),
            decision=StepDecision.PENDING.value,
            deadline=_parse_deadline(spec, now),
        ))

    if not any(step.required for step in chain.steps):
        raise ValidationError("approval chain needs at least one required step", field="steps")

    db.session.add(chain)
    db.session.flush()
    current_app.logger.info(
        "[APPROVAL] chain created chain_id=%s quotation_id=%s rev=%s steps=%s",
        chain.id, chain.quotation_id, chain.revision_version, len(chain.steps)
    )
    return chain


def compute_verdict(steps):
    """Verdict from the current step decisions; independent of decision order."""
    required = [s for s in steps if s.required]
    if any(s.decision == StepDecision.REJECTED.value for s in required):
        return ChainVerdict.REJECTED.value
    if all(s.decision == StepDecision.APPROVED.value for s in required):
        return ChainVerdict.APPROVED.value
    return ChainVerdict.PENDING.value


def active_step_index(steps):
    pending = [s.step_index for s in steps if s.required and s.is_pending]
    return min(pending) if pending else None


def _skip_pending(chain):
    for step in chain.steps:
        if step.is_pending:
            step.decision = StepDecision.SKIPPED.value


def _complete(chain, verdict, now, comment=None):
    chain.verdict = verdict
    chain.completed_at = now
    if verdict == ChainVerdict.REJECTED.value:
        chain.rejection_comment = comment
    _skip_pending(chain)


def _outcome(chain, step, now):
    verdict = compute_verdict(chain.steps)
    if verdict == ChainVerdict.APPROVED.value:
        _complete(chain, verdict, now)
        return ChainApproved(chain.id, chain.revision_version)
    if verdict == ChainVerdict.REJECTED.value:
        _complete(chain, verdict, now, step.comment)
        return ChainRejected(chain.id, chain.revision_version, step.step_index, step.comment)
    return None


def get_chain(chain_id):
    chain = db.session.get(ApprovalChain, chain_id)
    if chain is None:
        raise NotFound(f"approval chain {chain_id} not found")
    return chain


def submit_decision(chain_id, step_index, approver_id, decision, comment=None, roles=None,
                    revision_version=None, now=None):
    """
    Record one approver's decision on a step.

    Returns (step, outcome) where outcome is ChainApproved, ChainRejected or
    None while the chain is still pending.
    """
    now = now or datetime.utcnow()
    normalized = _DECISION_ALIASES.get(str(decision).lower())
    if normalized is None:
        raise ValidationError(f"unknown decision: {decision!r}", field="decision")

    step_index = _as_int(step_index, "step_index")
    if revision_version is not None:
        revision_version = _as_int(revision_version, "revision_version")

    chain = get_chain(chain_id)
    if chain.is_superseded:
        raise StaleChain(f"approval chain {chain_id} was superseded by a newer revision")
    if revision_version is not None and revision_version != chain.revision_version:
        raise StaleRevision(
            f"chain {chain_id} covers revision v{chain.revision_version}, not v{revision_version}"
        )
    if not chain.is_pending:
        raise InvalidStepState(f"approval chain {chain_id} is already {chain.verdict}")

    candidates = [s for s in chain.steps if s.step_index == step_index]
    if not candidates:
        raise InvalidStepState(f"approval chain {chain_id} has no step {step_index}")
    pending = [s for s in candidates if s.is_pending]
    if not pending:
        raise InvalidStepState(f"step {step_index} of chain {chain_id} is already decided")

    active = active_step_index(chain.steps)
    if active is not None and step_index > active:
        raise InvalidStepState(f"step {step_index} is not active yet; step {active} is still pending")

    roles = set(roles or ())
    authorized = [s for s in pending if s.roles & roles]
    if not authorized:
        raise Unauthorized(f"approver {approver_id} lacks the roles required for step {step_index}")

    # 必須ステップを優先
    step = sorted(authorized, key=lambda s: (not s.required, s.position))[0]
    step.decision = normalized
    step.decider_id = approver_id
    step.comment = comment
    step.decided_at = now
    # 並列ステップの同時判定はチェーンの版数で検出する
    chain.version = chain.version + 1

    outcome = _outcome(chain, step, now)
    db.session.flush()
    current_app.logger.info(
        "[APPROVAL] decision chain_id=%s step=%s approver_id=%s decision=%s verdict=%s",
        chain.id, step_index, approver_id, normalized, chain.verdict
    )
    return step, outcome


def supersede_chain(chain, now=None):
    """Retire a pending chain; returns False when it was already complete."""
    if chain is None or not chain.is_pending:
        return False
    now = now or datetime.utcnow()
    chain.verdict = ChainVerdict.SUPERSEDED.value
    chain.version = chain.version + 1
    chain.completed_at = now
    _skip_pending(chain)
    current_app.logger.info("[APPROVAL] chain superseded chain_id=%s quotation_id=%s", chain.id, chain.quotation_id)
    return True


def find_overdue_steps(now=None):
    now = now or datetime.utcnow()
    return (
        ApprovalStep.query
        .join(ApprovalChain, ApprovalStep.chain_id == ApprovalChain.id)
        .filter(ApprovalChain.verdict == ChainVerdict.PENDING.value)
        .filter(ApprovalStep.decision == StepDecision.PENDING.value)
        .filter(ApprovalStep.deadline.isnot(None))
        .filter(ApprovalStep.deadline < now)
        .order_by(ApprovalStep.deadline.asc())
        .all()
    )


def time_out_step(step_id, now=None):
    """
    Reject an overdue step on behalf of the system. Only steps of the active
    index time out; a later step's clock has not started yet.
    Returns (step, outcome) or (step, None) when nothing changed.
    """
    now = now or datetime.utcnow()
    step = db.session.get(ApprovalStep, step_id)
    if step is None:
        raise NotFound(f"approval step {step_id} not found")
    chain = step.chain
    if not chain.is_pending or not step.is_pending:
        return step, None
    active = active_step_index(chain.steps)
    if step.required and active is not None and step.step_index > active:
        return step, None

    if step.required:
        step.decision = StepDecision.REJECTED.value
    else:
        step.decision = StepDecision.SKIPPED.value
    step.comment = DEADLINE_COMMENT
    step.decided_at = now
    chain.version = chain.version + 1
    outcome = _outcome(chain, step, now)
    db.session.flush()
    current_app.logger.info(
        "[APPROVAL] step timed out chain_id=%s step=%s verdict=%s", chain.id, step.step_index, chain.verdict
    )
    return step, outcome


def pending_approvals_for(roles):
    """Active steps an approver holding these roles can decide now."""
    roles = set(roles or ())
    result = []
    chains = (
        ApprovalChain.query
        .filter(ApprovalChain.verdict == ChainVerdict.PENDING.value)
        .order_by(ApprovalChain.escalation_level.desc(), ApprovalChain.created_at.asc(), ApprovalChain.id.asc())
        .all()
    )
    for chain in chains:
        active = active_step_index(chain.steps)
        for step in chain.steps:
            if not step.is_pending or not (step.roles & roles):
                continue
            if active is not None and step.step_index > active:
                continue
            result.append(step)
    return result


def escalate_chain(chain_id, actor_id, reason, roles=None, allowed_roles=(), now=None):
    """
    Raise a pending chain's urgency by one level and record who escalated it
    and why. Escalated chains come first in pending_approvals_for.
    """
    now = now or datetime.utcnow()
    if not reason or not str(reason).strip():
        raise ValidationError("an escalation needs a reason", field="reason")
    if not set(roles or ()) & set(allowed_roles):
        raise Unauthorized(f"user {actor_id} cannot escalate approvals")

    chain = get_chain(chain_id)
    if chain.is_superseded:
        raise StaleChain(f"approval chain {chain_id} was superseded by a newer revision")
    if not chain.is_pending:
        raise InvalidStepState(f"approval chain {chain_id} is already {chain.verdict}")
    level = chain.escalation_level or 0
    if level >= len(ESCALATION_LEVELS) - 1:
        raise InvalidStepState(f"approval chain {chain_id} is already at {ESCALATION_LEVELS[level]} urgency")

    chain.escalation_level = level + 1
    chain.escalated_by = actor_id
    chain.escalated_at = now
    chain.escalation_reason = str(reason).strip()
    chain.version = chain.version + 1
    db.session.flush()
    current_app.logger.info(
        "[APPROVAL] chain escalated chain_id=%s actor_id=%s urgency=%s", chain.id, actor_id, chain.urgency
    )
    return chain


def chain_history(quotation_id):
    """Every chain ever created for the quotation, oldest first, with its steps."""
    return (
        ApprovalChain.query
        .filter(ApprovalChain.quotation_id == quotation_id)
        .order_by(ApprovalChain.id.asc())
        .all()
    )
