from quoteflow import db
from quoteflow.models.quotation import Quotation, QuotationStatus
from quoteflow.models.quotation_item import QuotationItem
from quoteflow.models.revision import QuotationRevision, RevisionKind
from quoteflow.models.approval_chain import ApprovalChain, ApprovalStep, ChainVerdict, StepDecision
from quoteflow.models.status_log import QuotationStatusLog
from quoteflow.models.user import User

__all__ = [
    "Quotation",
    "QuotationStatus",
    "QuotationItem",
    "QuotationRevision",
    "RevisionKind",
    "ApprovalChain",
    "ApprovalStep",
    "ChainVerdict",
    "StepDecision",
    "QuotationStatusLog",
    "User",
]
