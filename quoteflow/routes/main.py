from datetime import datetime
from flask import Blueprint, jsonify, request, g, current_app
from quoteflow.decorators import roles_required
from quoteflow.errors import ValidationError
from quoteflow.services import workflow
from quoteflow.services.notifications import dispatch_events


main_bp = Blueprint('main', __name__)


# CI用ヘルスチェックルート（認証・DB依存なし）
@main_bp.route("/health")
def health():
    return "OK", 200


# 有効期限・承認期限の定期評価（外部スケジューラから呼ぶ）
@main_bp.route("/scheduler/evaluate-expired", methods=["POST"])
@roles_required("admin", "scheduler")
def evaluate_expired():
    data = request.get_json(silent=True) or {}
    now = None
    if data.get("now"):
        try:
            now = datetime.fromisoformat(data["now"])
        except ValueError:
            raise ValidationError("now must be an ISO 8601 datetime", field="now")
    current_app.logger.info("[ROUTE] scheduler sweep requested by user_id=%s", g.current_user.id)
    result = workflow.evaluate_expired(now=now)
    dispatch_events(result["events"])
    return jsonify({
        "expired": result["expired"],
        "timed_out_chains": result["timed_out_chains"],
        "skipped": result["skipped"],
        "skipped_steps": result["skipped_steps"],
        "events": len(result["events"]),
    })
