import os
import logging
import sqlite3
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from .config import Config

db = SQLAlchemy()


def _sqlite_file_path(uri):
    prefix = "sqlite:///"
    if not uri.startswith(prefix):
        return None
    path = uri[len(prefix):]
    if not path or path == ":memory:":
        return None
    return path


def create_app(test_config=None):
    from flask import g, request
    from quoteflow.errors import QuotationError
    from quoteflow.models.user import User

    def load_current_user():
        # 認証は外部で行い、ユーザーIDはヘッダで受け取る
        raw = request.headers.get("X-User-Id")
        g.current_user = None
        if not raw:
            return
        try:
            user_id = int(raw)
        except ValueError:
            return
        user = db.session.get(User, user_id)  # SQLAlchemy 2系互換
        if user and getattr(user, "is_active", True):
            g.current_user = user

    def safe_set_pragma(db_path, sql):
        conn = sqlite3.connect(db_path, timeout=30)
        try:
            conn.execute(sql)
            conn.commit()
        except Exception as e:
            logging.warning("PRAGMA failed: %s (%s)", sql, e)
        finally:
            conn.close()

    # logging
    debug_mode = os.environ.get("FLASK_DEBUG", "0") == "1"
    logging.basicConfig(
        level=logging.DEBUG if debug_mode else logging.INFO,
        format='[%(asctime)s] %(levelname)s in %(module)s: %(message)s',
    )

    app = Flask(__name__)
    app.logger.setLevel(logging.INFO)

    # --- 設定 ---
    app.config.from_object(Config)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", app.config["SECRET_KEY"])
    env_uri = os.environ.get("QUOTEFLOW_DATABASE_URI")
    env_db = os.environ.get("QUOTEFLOW_DB_PATH")
    if env_uri:
        app.config["SQLALCHEMY_DATABASE_URI"] = env_uri
    elif env_db:
        app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{env_db}"
    if test_config:
        app.config.update(test_config)
    if debug_mode:
        app.config["PROPAGATE_EXCEPTIONS"] = True

    app.logger.info("[DB] Using database: %s", app.config["SQLALCHEMY_DATABASE_URI"])

    db.init_app(app)

    with app.app_context():
        from quoteflow import models  # noqa: F401  テーブル定義の登録
        db.create_all()

    db_path = _sqlite_file_path(app.config["SQLALCHEMY_DATABASE_URI"])
    if db_path:
        safe_set_pragma(db_path, "PRAGMA journal_mode=WAL")

    @app.errorhandler(QuotationError)
    def quotation_error(e):
        app.logger.info("[ERROR] %s: %s", e.__class__.__name__, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "Forbidden", "message": "forbidden"}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "NotFound", "message": "not found"}), 404

    @app.errorhandler(500)
    def internal_error(e):
        return jsonify({"error": "InternalServerError", "message": "internal server error"}), 500

    app.before_request(load_current_user)

    # Blueprints
    from quoteflow.routes.main import main_bp
    from quoteflow.routes.quotation import quotation_bp
    from quoteflow.routes.approval import approval_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(quotation_bp)
    app.register_blueprint(approval_bp)

    def log_routes():
        logging.debug("[Flask routes] URL map:")
        for rule in app.url_map.iter_rules():
            logging.debug("%s %s -> %s", ",".join(sorted(rule.methods)), rule.rule, rule.endpoint)

    with app.app_context():
        log_routes()

    app.logger.info("[BOOT] create_app completed")
    return app
