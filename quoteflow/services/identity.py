from quoteflow import db
from quoteflow.models.user import User


def resolve_roles(user_id):
    """Role set of an active user; unknown or inactive users have none."""
    if user_id is None:
        return set()
    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        return set()
    return user.role_set
