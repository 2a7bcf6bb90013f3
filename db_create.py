print("db_create.py start")
import traceback
from quoteflow import create_app, db

try:
    app = create_app()
    with app.app_context():
        db.create_all()
        print("Database and tables created successfully.")
except Exception:
    print("=== Exception occurred ===")
    traceback.print_exc()
    raise SystemExit(1)
