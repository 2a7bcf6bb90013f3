from datetime import datetime

QUOTATION_CREATED = "quotation.created"
QUOTATION_UPDATED = "quotation.updated"
QUOTATION_SUBMITTED = "quotation.submitted"
STEP_DECIDED = "approval.step_decided"
QUOTATION_APPROVED = "quotation.approved"
QUOTATION_APPROVAL_REJECTED = "quotation.approval_rejected"
CHAIN_SUPERSEDED = "approval.chain_superseded"
QUOTATION_SENT = "quotation.sent"
QUOTATION_RESENT = "quotation.resent"
QUOTATION_VIEWED = "quotation.viewed"
QUOTATION_ACCEPTED = "quotation.accepted"
QUOTATION_REJECTED = "quotation.rejected"
QUOTATION_EXPIRED = "quotation.expired"
QUOTATION_ARCHIVED = "quotation.archived"
QUOTATION_REOPENED = "quotation.reopened"
QUOTATION_REVISED = "quotation.revised"
QUOTATION_DUPLICATED = "quotation.duplicated"
APPROVAL_ESCALATED = "approval.escalated"


def build_event(quotation, event_type, actor_id=None, metadata=None, now=None):
    """
    Build a domain event for a committed quotation change.
    Events are plain dicts so they can be logged or handed to any dispatcher.
    """
    return {
        "quotation_id": quotation.id,
        "revision_version": quotation.current_revision_version,
        "actor_id": actor_id,
        "timestamp": (now or datetime.utcnow()).isoformat(),
        "event_type": event_type,
        "metadata": dict(metadata or {}),
    }
