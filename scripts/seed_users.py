"""
Create or update the users the approval workflow needs.

Usage:
    python scripts/seed_users.py                 # default set
    python scripts/seed_users.py alice manager,finance
"""
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quoteflow import create_app, db  # noqa: E402
from quoteflow.models.user import User  # noqa: E402

DEFAULT_USERS = [
    ("admin", "Administrator", "admin"),
    ("sales", "Sales", "sales"),
    ("manager", "Sales Manager", "manager"),
    ("finance", "Finance", "finance"),
    ("legal", "Legal", "legal"),
    ("scheduler", "Scheduler", "scheduler"),
]


def upsert_user(login_id, display_name, roles):
    user = User.query.filter_by(login_id=login_id).first()
    if user:
        user.roles = roles
        user.is_active = True
        print(f"[INFO] Updated login_id={login_id} id={user.id} roles={roles}")
    else:
        user = User(login_id=login_id, display_name=display_name, roles=roles, is_active=True)
        db.session.add(user)
        db.session.flush()
        print(f"[INFO] Created login_id={login_id} id={user.id} roles={roles}")
    return user


def main(argv):
    app = create_app()
    with app.app_context():
        if len(argv) >= 2:
            upsert_user(argv[0], argv[0], argv[1])
        else:
            for login_id, display_name, roles in DEFAULT_USERS:
                upsert_user(login_id, display_name, roles)
        db.session.commit()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
