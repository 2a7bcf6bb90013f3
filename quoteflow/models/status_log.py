from quoteflow import db
from datetime import datetime


class QuotationStatusLog(db.Model):
    __tablename__ = "quotation_status_log"

    id = db.Column(db.Integer, primary_key=True)
    quotation_id = db.Column(db.Integer, nullable=False, index=True)
    event = db.Column(db.String(40), nullable=False)
    from_status = db.Column(db.String(20), nullable=True)
    to_status = db.Column(db.String(20), nullable=False)
    actor_id = db.Column(db.Integer, nullable=True)
    revision_version = db.Column(db.Integer, nullable=True)
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "event": self.event,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_id": self.actor_id,
            "revision_version": self.revision_version,
            "comment": self.comment,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
