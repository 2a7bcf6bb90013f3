from quoteflow import db
from datetime import datetime
from enum import Enum
from sqlalchemy import event
from sqlalchemy.orm import relationship


class RevisionKind(str, Enum):
    INITIAL = 'initial'
    UPDATE = 'update'
    REVISED = 'revised'
    REOPENED = 'reopened'


class ImmutableRevisionError(Exception):
    pass


class QuotationRevision(db.Model):
    __tablename__ = "quotation_revisions"
    __table_args__ = (
        db.UniqueConstraint("quotation_id", "version_number", name="uq_revision_quotation_version"),
    )

    id = db.Column(db.Integer, primary_key=True)
    quotation_id = db.Column(db.Integer, db.ForeignKey("quotations.id"), nullable=False, index=True)
    version_number = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(20), nullable=False, default=RevisionKind.UPDATE.value)
    snapshot = db.Column(db.JSON, nullable=False)
    content_hash = db.Column(db.String(64), nullable=False)
    change_summary = db.Column(db.Text, nullable=True)
    author_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    quotation = relationship("Quotation")

    def to_dict(self, include_snapshot=True):
        data = {
            "id": self.id,
            "quotation_id": self.quotation_id,
            "version_number": self.version_number,
            "kind": self.kind,
            "content_hash": self.content_hash,
            "change_summary": self.change_summary,
            "author_id": self.author_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_snapshot:
            data["snapshot"] = self.snapshot
        return data

    def __repr__(self):
        return f"<QuotationRevision quotation_id={self.quotation_id} v{self.version_number} kind={self.kind}>"


# 改定履歴は書き込み後に変更・削除できない
@event.listens_for(QuotationRevision, "before_update")
def _block_revision_update(mapper, connection, target):
    raise ImmutableRevisionError(f"revision {target.quotation_id}/v{target.version_number} is immutable")


@event.listens_for(QuotationRevision, "before_delete")
def _block_revision_delete(mapper, connection, target):
    raise ImmutableRevisionError(f"revision {target.quotation_id}/v{target.version_number} cannot be deleted")
