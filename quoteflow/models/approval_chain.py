from quoteflow import db
from datetime import datetime
from enum import Enum
from sqlalchemy.orm import relationship


class ChainVerdict(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    SUPERSEDED = 'superseded'


class StepDecision(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    SKIPPED = 'skipped'


# 承認の緊急度 (エスカレーションごとに1段上げる)
ESCALATION_LEVELS = ("normal", "high", "urgent")


class ApprovalChain(db.Model):
    __tablename__ = "approval_chains"

    id = db.Column(db.Integer, primary_key=True)
    quotation_id = db.Column(db.Integer, db.ForeignKey("quotations.id"), nullable=False, index=True)
    revision_version = db.Column(db.Integer, nullable=False)
    verdict = db.Column(db.String(20), nullable=False, default=ChainVerdict.PENDING.value)
    rejection_comment = db.Column(db.Text, nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)
    escalation_level = db.Column(db.Integer, nullable=False, default=0)
    escalated_by = db.Column(db.Integer, nullable=True)
    escalated_at = db.Column(db.DateTime, nullable=True)
    escalation_reason = db.Column(db.Text, nullable=True)

    steps = relationship(
        "ApprovalStep",
        back_populates="chain",
        cascade="all, delete-orphan",
        order_by=lambda: [ApprovalStep.step_index, ApprovalStep.position],
    )

    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    @property
    def is_pending(self):
        return self.verdict == ChainVerdict.PENDING.value

    @property
    def is_superseded(self):
        return self.verdict == ChainVerdict.SUPERSEDED.value

    @property
    def urgency(self):
        return ESCALATION_LEVELS[self.escalation_level or 0]

    def to_dict(self):
        return {
            "id": self.id,
            "quotation_id": self.quotation_id,
            "revision_version": self.revision_version,
            "verdict": self.verdict,
            "rejection_comment": self.rejection_comment,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "urgency": self.urgency,
            "escalated_by": self.escalated_by,
            "escalated_at": self.escalated_at.isoformat() if self.escalated_at else None,
            "escalation_reason": self.escalation_reason,
            "steps": [step.to_dict() for step in self.steps],
        }

    def __repr__(self):
        return f"<ApprovalChain id={self.id} quotation_id={self.quotation_id} rev={self.revision_version} verdict={self.verdict}>"


class ApprovalStep(db.Model):
    __tablename__ = "approval_steps"

    id = db.Column(db.Integer, primary_key=True)
    chain_id = db.Column(db.Integer, db.ForeignKey("approval_chains.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    step_index = db.Column(db.Integer, nullable=False)  # 同じindexのステップは並列
    required_roles = db.Column(db.String(255), nullable=False)  # カンマ区切り
    required = db.Column(db.Boolean, nullable=False, default=True)
    decision = db.Column(db.String(20), nullable=False, default=StepDecision.PENDING.value)
    decider_id = db.Column(db.Integer, nullable=True)
    comment = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime, nullable=True)
    deadline = db.Column(db.DateTime, nullable=True)

    chain = relationship("ApprovalChain", back_populates="steps")

    @property
    def roles(self):
        return {r.strip() for r in (self.required_roles or "").split(",") if r.strip()}

    @property
    def is_pending(self):
        return self.decision == StepDecision.PENDING.value

    def to_dict(self):
        return {
            "id": self.id,
            "step_index": self.step_index,
            "position": self.position,
            "required_roles": sorted(self.roles),
            "required": self.required,
            "decision": self.decision,
            "decider_id": self.decider_id,
            "comment": self.comment,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "deadline": self.deadline.isoformat() if self.deadline else None,
        }

    def __repr__(self):
        return f"<ApprovalStep chain_id={self.chain_id} index={self.step_index} decision={self.decision}>"
