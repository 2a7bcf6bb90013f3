from flask import Blueprint, jsonify, request, g, current_app
from quoteflow.decorators import login_required
from quoteflow.errors import ValidationError
from quoteflow.services import approval, workflow
from quoteflow.services.notifications import dispatch_events

approval_bp = Blueprint('approval', __name__)


@approval_bp.route('/approval-chains/<int:chain_id>')
@login_required
def chain_detail(chain_id):
    chain = approval.get_chain(chain_id)
    return jsonify({"approval_chain": chain.to_dict()})


@approval_bp.route('/approval-chains/<int:chain_id>/decisions', methods=['POST'])
@login_required
def chain_decide(chain_id):
    data = request.get_json(silent=True) or {}
    if data.get("step_index") is None:
        raise ValidationError("step_index is required", field="step_index")
    if not data.get("decision"):
        raise ValidationError("decision is required", field="decision")

    user = g.current_user
    current_app.logger.info(
        "[ROUTE] decision chain_id=%s step=%s user_id=%s decision=%s",
        chain_id, data.get("step_index"), user.id, data.get("decision")
    )
    result = workflow.submit_approval_decision(
        chain_id,
        data["step_index"],
        approver_id=user.id,
        decision=data["decision"],
        comment=data.get("comment"),
        revision_version=data.get("revision_version"),
    )
    dispatch_events(result.events)
    return jsonify({
        "approval_chain": result.chain.to_dict(),
        "quotation": result.quotation.to_dict(),
        "events": [e["event_type"] for e in result.events],
    })


@approval_bp.route('/approval-chains/<int:chain_id>/escalate', methods=['POST'])
@login_required
def chain_escalate(chain_id):
    data = request.get_json(silent=True) or {}
    user = g.current_user
    current_app.logger.info("[ROUTE] escalate chain_id=%s user_id=%s", chain_id, user.id)
    result = workflow.escalate_approval(chain_id, actor_id=user.id, reason=data.get("reason"))
    dispatch_events(result.events)
    return jsonify({
        "approval_chain": result.chain.to_dict(),
        "quotation": result.quotation.to_dict(),
        "events": [e["event_type"] for e in result.events],
    })


# 自分が判断できる承認待ちステップ一覧
@approval_bp.route('/approvals/pending')
@login_required
def pending_approvals():
    steps = approval.pending_approvals_for(g.current_user.role_set)
    return jsonify({
        "pending": [
            dict(step.to_dict(), chain_id=step.chain_id, quotation_id=step.chain.quotation_id,
                 revision_version=step.chain.revision_version, urgency=step.chain.urgency)
            for step in steps
        ]
    })
