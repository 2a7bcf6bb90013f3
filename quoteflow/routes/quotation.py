from datetime import datetime

from flask import Blueprint, jsonify, request, g, current_app
from quoteflow.decorators import login_required, roles_required
from quoteflow.errors import ValidationError
from quoteflow.services import revisions, workflow
from quoteflow.services.notifications import dispatch_events

quotation_bp = Blueprint('quotation', __name__)


def _payload():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("request body must be a JSON object")
    return data


def _expected_version(data):
    # 更新系は必ず呼び出し側が把握している版数を送る
    if data.get("expected_version") is None:
        raise ValidationError("expected_version is required", field="expected_version")
    return data["expected_version"]


def _actor_id():
    return g.current_user.id


def _respond(result, status=200):
    # コミット後に通知
    dispatch_events(result.events)
    body = {
        "quotation": result.quotation.to_dict(),
        "available_events": workflow.available_events(result.quotation.status),
        "events": [e["event_type"] for e in result.events],
    }
    if result.revision is not None:
        body["revision"] = result.revision.to_dict(include_snapshot=False)
    if result.chain is not None:
        body["approval_chain"] = result.chain.to_dict()
    return jsonify(body), status


@quotation_bp.route('/quotations', methods=['POST'])
@login_required
def quotation_create():
    data = _payload()
    current_app.logger.info("[ROUTE] create quotation user_id=%s", _actor_id())
    result = workflow.create_quotation(
        title=data.get("title"),
        items=data.get("items"),
        actor_id=_actor_id(),
        client_reference=data.get("client_reference"),
        currency=data.get("currency"),
        document_discount=data.get("document_discount"),
        document_taxes=data.get("document_taxes"),
        validity_days=data.get("validity_days"),
    )
    return _respond(result, 201)


def _date_arg(name):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO 8601 date", field=name)


# 一覧 (status は複数指定可: ?status=sent&status=viewed)
@quotation_bp.route('/quotations', methods=['GET'])
@login_required
def quotation_list():
    quotations = workflow.list_quotations(
        status=request.args.getlist("status") or None,
        created_by=request.args.get("created_by") or None,
        client_reference=request.args.get("client_reference") or None,
        created_from=_date_arg("created_from"),
        created_to=_date_arg("created_to"),
    )
    return jsonify({
        "quotations": [q.to_dict() for q in quotations],
        "count": len(quotations),
    })


@quotation_bp.route('/quotations/<int:quotation_id>')
@login_required
def quotation_detail(quotation_id):
    quotation = workflow.get_quotation(quotation_id)
    return jsonify({
        "quotation": quotation.to_dict(),
        "available_events": workflow.available_events(quotation.status),
    })


@quotation_bp.route('/quotations/<int:quotation_id>/items', methods=['PUT'])
@login_required
def quotation_update_items(quotation_id):
    data = _payload()
    expected_version = _expected_version(data)
    changes = {k: data[k] for k in workflow.EDITABLE_FIELDS if k in data}
    result = workflow.update_draft_items(
        quotation_id,
        items=data.get("items"),
        actor_id=_actor_id(),
        expected_version=expected_version,
        **changes,
    )
    return _respond(result)


@quotation_bp.route('/quotations/<int:quotation_id>/submit', methods=['POST'])
@login_required
def quotation_submit(quotation_id):
    data = _payload()
    result = workflow.submit_for_approval(
        quotation_id,
        steps=data.get("steps"),
        actor_id=_actor_id(),
        expected_version=_expected_version(data),
    )
    return _respond(result)


@quotation_bp.route('/quotations/<int:quotation_id>/send', methods=['POST'])
@login_required
def quotation_send(quotation_id):
    data = _payload()
    result = workflow.send(quotation_id, actor_id=_actor_id(), expected_version=_expected_version(data))
    return _respond(result)


@quotation_bp.route('/quotations/<int:quotation_id>/view', methods=['POST'])
@login_required
def quotation_view(quotation_id):
    data = _payload()
    result = workflow.record_client_view(
        quotation_id, actor_id=_actor_id(), expected_version=data.get("expected_version")
    )
    return _respond(result)


@quotation_bp.route('/quotations/<int:quotation_id>/accept', methods=['POST'])
@login_required
def quotation_accept(quotation_id):
    data = _payload()
    result = workflow.accept(quotation_id, actor_id=_actor_id(), expected_version=_expected_version(data))
    return _respond(result)


@quotation_bp.route('/quotations/<int:quotation_id>/reject', methods=['POST'])
@login_required
def quotation_reject(quotation_id):
    data = _payload()
    result = workflow.reject(
        quotation_id,
        reason=data.get("reason"),
        actor_id=_actor_id(),
        expected_version=_expected_version(data),
    )
    return _respond(result)


@quotation_bp.route('/quotations/<int:quotation_id>/revise', methods=['POST'])
@login_required
def quotation_revise(quotation_id):
    data = _payload()
    result = workflow.revise(
        quotation_id,
        actor_id=_actor_id(),
        expected_version=_expected_version(data),
        change_summary=data.get("change_summary"),
    )
    return _respond(result)


@quotation_bp.route('/quotations/<int:quotation_id>/archive', methods=['POST'])
@login_required
@roles_required('admin')
def quotation_archive(quotation_id):
    data = _payload()
    result = workflow.archive(
        quotation_id,
        actor_id=_actor_id(),
        expected_version=_expected_version(data),
        reason=data.get("reason"),
    )
    return _respond(result)


@quotation_bp.route('/quotations/<int:quotation_id>/reopen', methods=['POST'])
@login_required
@roles_required('admin')
def quotation_reopen(quotation_id):
    data = _payload()
    result = workflow.reopen(
        quotation_id,
        admin_id=_actor_id(),
        expected_version=_expected_version(data),
        reason=data.get("reason"),
    )
    return _respond(result)


@quotation_bp.route('/quotations/<int:quotation_id>/revisions')
@login_required
def quotation_revisions(quotation_id):
    history = workflow.get_revision_history(quotation_id)
    return jsonify({"revisions": [r.to_dict(include_snapshot=False) for r in history]})


@quotation_bp.route('/quotations/<int:quotation_id>/revisions/<int:version>')
@login_required
def quotation_revision_detail(quotation_id, version):
    revision = revisions.get_revision(quotation_id, version)
    return jsonify({"revision": revision.to_dict()})


@quotation_bp.route('/quotations/<int:quotation_id>/revisions/<int:from_version>/diff/<int:to_version>')
@login_required
def quotation_revision_diff(quotation_id, from_version, to_version):
    return jsonify(revisions.diff_revisions(quotation_id, from_version, to_version))


@quotation_bp.route('/quotations/<int:quotation_id>/history')
@login_required
def quotation_status_history(quotation_id):
    logs = workflow.status_history(quotation_id)
    return jsonify({"history": [log.to_dict() for log in logs]})


@quotation_bp.route('/quotations/<int:quotation_id>/duplicate', methods=['POST'])
@login_required
def quotation_duplicate(quotation_id):
    data = _payload()
    current_app.logger.info("[ROUTE] duplicate quotation_id=%s user_id=%s", quotation_id, _actor_id())
    result = workflow.duplicate_quotation(quotation_id, actor_id=_actor_id(), title=data.get("title"))
    return _respond(result, 201)


@quotation_bp.route('/quotations/<int:quotation_id>/approval-chains')
@login_required
def quotation_approval_history(quotation_id):
    chains = workflow.get_approval_history(quotation_id)
    return jsonify({"approval_chains": [chain.to_dict() for chain in chains]})
