from datetime import datetime
from quoteflow import db

class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    login_id = db.Column(db.String(128), unique=True, nullable=False)
    display_name = db.Column(db.String(128), nullable=False)
    roles = db.Column(db.String(255), nullable=False, default="user")  # カンマ区切り
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def role_set(self):
        return {r.strip() for r in (self.roles or "").split(",") if r.strip()}

    def has_role(self, *roles):
        return bool(self.role_set.intersection(roles))

    def __repr__(self):
        return f"<User {self.login_id} roles={self.roles}>"
