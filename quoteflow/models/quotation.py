from quoteflow import db
from sqlalchemy.orm import relationship
from datetime import datetime
from enum import Enum


# 見積ステータス（承認中/承認済は社内向けのサブ状態）
class QuotationStatus(str, Enum):
    DRAFT = 'draft'
    PENDING_APPROVAL = 'pending_approval'
    APPROVED = 'approved'
    SENT = 'sent'
    VIEWED = 'viewed'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'
    EXPIRED = 'expired'
    ARCHIVED = 'archived'


TERMINAL_STATUSES = {
    QuotationStatus.ACCEPTED.value,
    QuotationStatus.REJECTED.value,
    QuotationStatus.EXPIRED.value,
    QuotationStatus.ARCHIVED.value,
}


def _money(value):
    return None if value is None else f"{value:f}"


class Quotation(db.Model):
    __tablename__ = "quotations"

    id = db.Column(db.Integer, primary_key=True)
    document_number = db.Column(db.String(32), unique=True, nullable=False)
    title = db.Column(db.String(200), nullable=False)
    client_reference = db.Column(db.String(200), nullable=True)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    status = db.Column(db.String(20), nullable=False, default=QuotationStatus.DRAFT.value, index=True)

    # 改定・承認のポインタ
    current_revision_version = db.Column(db.Integer, nullable=False, default=0)
    current_chain_id = db.Column(db.Integer, nullable=True)

    # 楽観ロック用
    version = db.Column(db.Integer, nullable=False, default=1)

    validity_days = db.Column(db.Integer, nullable=False, default=30)
    valid_until = db.Column(db.DateTime, nullable=True)

    # 文書全体の値引・税ルール（JSON, 値は文字列）
    document_discount = db.Column(db.JSON, nullable=True)
    document_taxes = db.Column(db.JSON, nullable=True)

    # 集計値（計算結果のキャッシュ）
    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    grand_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    rejection_reason = db.Column(db.Text, nullable=True)
    decision_reason = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    submitted_at = db.Column(db.DateTime, nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    sent_at = db.Column(db.DateTime, nullable=True)
    viewed_at = db.Column(db.DateTime, nullable=True)
    accepted_at = db.Column(db.DateTime, nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)
    expired_at = db.Column(db.DateTime, nullable=True)
    archived_at = db.Column(db.DateTime, nullable=True)
    reopened_at = db.Column(db.DateTime, nullable=True)

    items = relationship(
        "QuotationItem",
        back_populates="quotation",
        cascade="all, delete-orphan",
        order_by="QuotationItem.position",
    )

    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    @property
    def is_draft(self):
        return self.status == QuotationStatus.DRAFT.value

    @property
    def is_archived(self):
        return self.status == QuotationStatus.ARCHIVED.value

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "document_number": self.document_number,
            "title": self.title,
            "client_reference": self.client_reference,
            "currency": self.currency,
            "status": self.status,
            "version": self.version,
            "current_revision_version": self.current_revision_version,
            "current_chain_id": self.current_chain_id,
            "validity_days": self.validity_days,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "document_discount": self.document_discount,
            "document_taxes": self.document_taxes,
            "subtotal": _money(self.subtotal),
            "discount_amount": _money(self.discount_amount),
            "tax_amount": _money(self.tax_amount),
            "grand_total": _money(self.grand_total),
            "rejection_reason": self.rejection_reason,
            "decision_reason": self.decision_reason,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "items": [item.to_dict() for item in self.items],
        }

    def __repr__(self):
        return f"<Quotation id={self.id} number={self.document_number} status={self.status} version={self.version}>"
