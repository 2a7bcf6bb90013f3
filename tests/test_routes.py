from datetime import timedelta

from conftest import ITEMS, PARALLEL_STEPS, T0


def _headers(user_id):
    return {"X-User-Id": str(user_id)}


def _create(client, users, **extra):
    body = {"title": "Website redesign", "items": ITEMS}
    body.update(extra)
    resp = client.post("/quotations", json=body, headers=_headers(users["sales"]))
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.data == b"OK"


def test_requests_without_user_are_rejected(client, users):
    resp = client.post("/quotations", json={"title": "x"})
    assert resp.status_code == 401


def test_create_and_read(client, users):
    body = _create(client, users, document_discount={"type": "percentage", "value": 10})
    quotation = body["quotation"]
    assert quotation["status"] == "draft"
    assert quotation["grand_total"] == "198.00"
    assert body["revision"]["version_number"] == 1
    assert body["events"] == ["quotation.created"]
    assert body["available_events"] == ["archive", "submit_for_approval"]

    resp = client.get(f"/quotations/{quotation['id']}", headers=_headers(users["sales"]))
    assert resp.status_code == 200
    assert resp.get_json()["quotation"]["document_number"] == quotation["document_number"]


def test_unknown_quotation_is_404(client, users):
    resp = client.get("/quotations/999", headers=_headers(users["sales"]))
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "NotFound"


def test_mutations_require_expected_version(client, users):
    quotation = _create(client, users)["quotation"]
    resp = client.put(f"/quotations/{quotation['id']}/items", json={"items": ITEMS},
                      headers=_headers(users["sales"]))
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "ValidationError"


def test_stale_version_is_409(client, users):
    quotation = _create(client, users)["quotation"]
    url = f"/quotations/{quotation['id']}/items"
    ok = client.put(url, json={"items": ITEMS, "expected_version": 1}, headers=_headers(users["sales"]))
    assert ok.status_code == 200
    assert ok.get_json()["quotation"]["version"] == 2

    stale = client.put(url, json={"items": ITEMS, "expected_version": 1}, headers=_headers(users["sales"]))
    assert stale.status_code == 409
    payload = stale.get_json()
    assert payload["error"] == "ConcurrentModification"
    assert payload["retryable"] is True


def test_invalid_line_is_400_and_discount_overflow_is_422(client, users):
    bad = client.post("/quotations", json={"title": "x", "items": [{"quantity": 0, "unit_price": "1"}]},
                      headers=_headers(users["sales"]))
    assert bad.status_code == 400
    overflow = client.post("/quotations", json={"title": "x", "items": ITEMS,
                                                "document_discount": {"type": "fixed", "value": 999}},
                           headers=_headers(users["sales"]))
    assert overflow.status_code == 422
    assert overflow.get_json()["error"] == "DiscountExceedsSubtotal"


def test_approval_and_client_flow(client, users):
    quotation = _create(client, users)["quotation"]
    qid = quotation["id"]

    submitted = client.post(f"/quotations/{qid}/submit",
                            json={"expected_version": quotation["version"], "steps": PARALLEL_STEPS},
                            headers=_headers(users["sales"])).get_json()
    chain_id = submitted["approval_chain"]["id"]
    assert submitted["quotation"]["status"] == "pending_approval"

    pending = client.get("/approvals/pending", headers=_headers(users["finance"])).get_json()["pending"]
    assert [(p["chain_id"], p["step_index"]) for p in pending] == [(chain_id, 0)]

    forbidden = client.post(f"/approval-chains/{chain_id}/decisions",
                            json={"step_index": 0, "decision": "approve"},
                            headers=_headers(users["viewer"]))
    assert forbidden.status_code == 403
    assert forbidden.get_json()["error"] == "Unauthorized"

    for approver in ("manager", "finance"):
        resp = client.post(f"/approval-chains/{chain_id}/decisions",
                           json={"step_index": 0, "decision": "approve", "comment": f"ok by {approver}"},
                           headers=_headers(users[approver]))
        assert resp.status_code == 200, resp.get_json()
    body = resp.get_json()
    assert body["approval_chain"]["verdict"] == "approved"
    assert body["quotation"]["status"] == "approved"
    assert body["events"] == ["approval.step_decided", "quotation.approved"]

    version = body["quotation"]["version"]
    sent = client.post(f"/quotations/{qid}/send", json={"expected_version": version},
                       headers=_headers(users["sales"])).get_json()
    assert sent["quotation"]["status"] == "sent"
    assert sent["quotation"]["valid_until"] is not None

    viewed = client.post(f"/quotations/{qid}/view", json={}, headers=_headers(users["sales"])).get_json()
    assert viewed["quotation"]["status"] == "viewed"

    accepted = client.post(f"/quotations/{qid}/accept",
                           json={"expected_version": viewed["quotation"]["version"]},
                           headers=_headers(users["sales"])).get_json()
    assert accepted["quotation"]["status"] == "accepted"
    assert accepted["available_events"] == ["reopen"]

    history = client.get(f"/quotations/{qid}/history", headers=_headers(users["sales"])).get_json()["history"]
    assert [h["to_status"] for h in history][-1] == "accepted"


def test_illegal_transition_is_409(client, users):
    quotation = _create(client, users)["quotation"]
    resp = client.post(f"/quotations/{quotation['id']}/send", json={"expected_version": 1},
                       headers=_headers(users["sales"]))
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "InvalidStateTransition"


def test_archive_and_reopen_are_admin_only(client, users):
    quotation = _create(client, users)["quotation"]
    url = f"/quotations/{quotation['id']}/archive"
    denied = client.post(url, json={"expected_version": 1}, headers=_headers(users["sales"]))
    assert denied.status_code == 403

    archived = client.post(url, json={"expected_version": 1, "reason": "duplicate"},
                           headers=_headers(users["admin"]))
    assert archived.status_code == 200
    assert archived.get_json()["quotation"]["status"] == "archived"

    edit = client.put(f"/quotations/{quotation['id']}/items", json={"items": ITEMS, "expected_version": 2},
                      headers=_headers(users["sales"]))
    assert edit.status_code == 409
    assert edit.get_json()["error"] == "QuotationArchived"


def test_revision_endpoints(client, users):
    quotation = _create(client, users)["quotation"]
    qid = quotation["id"]
    client.put(f"/quotations/{qid}/items",
               json={"items": ITEMS + [{"description": "Hosting", "quantity": 1, "unit_price": "30"}],
                     "expected_version": 1},
               headers=_headers(users["sales"]))
    client.post(f"/quotations/{qid}/submit", json={"expected_version": 2, "steps": PARALLEL_STEPS},
                headers=_headers(users["sales"]))

    listing = client.get(f"/quotations/{qid}/revisions", headers=_headers(users["sales"])).get_json()
    assert [r["version_number"] for r in listing["revisions"]] == [1, 2]

    first = client.get(f"/quotations/{qid}/revisions/1", headers=_headers(users["sales"])).get_json()
    assert first["revision"]["snapshot"]["totals"]["grand_total"] == "220.00"

    diff = client.get(f"/quotations/{qid}/revisions/1/diff/2", headers=_headers(users["sales"])).get_json()
    assert [i["description"] for i in diff["items"]["added"]] == ["Hosting"]

    missing = client.get(f"/quotations/{qid}/revisions/9", headers=_headers(users["sales"]))
    assert missing.status_code == 404


def test_scheduler_sweep_endpoint(client, users):
    quotation = _create(client, users)["quotation"]
    qid = quotation["id"]
    chain_id = client.post(f"/quotations/{qid}/submit",
                           json={"expected_version": 1, "steps": [{"step_index": 0, "required_roles": ["manager"]}]},
                           headers=_headers(users["sales"])).get_json()["approval_chain"]["id"]
    approved = client.post(f"/approval-chains/{chain_id}/decisions", json={"step_index": 0, "decision": "approve"},
                           headers=_headers(users["manager"])).get_json()
    sent = client.post(f"/quotations/{qid}/send", json={"expected_version": approved["quotation"]["version"]},
                       headers=_headers(users["sales"])).get_json()
    assert sent["quotation"]["status"] == "sent"

    denied = client.post("/scheduler/evaluate-expired", json={}, headers=_headers(users["sales"]))
    assert denied.status_code == 403

    later = (T0.replace(year=2100) + timedelta(days=1)).isoformat()
    resp = client.post("/scheduler/evaluate-expired", json={"now": later}, headers=_headers(users["scheduler"]))
    assert resp.status_code == 200
    assert resp.get_json()["expired"] == [qid]
    assert resp.get_json()["skipped_steps"] == []
    status = client.get(f"/quotations/{qid}", headers=_headers(users["sales"])).get_json()["quotation"]["status"]
    assert status == "expired"


def _submit(client, users, qid, steps):
    resp = client.post(f"/quotations/{qid}/submit", json={"expected_version": 1, "steps": steps},
                       headers=_headers(users["sales"]))
    assert resp.status_code == 200, resp.get_json()
    return resp.get_json()["approval_chain"]["id"]


def test_non_integer_revision_version_is_400(client, users):
    qid = _create(client, users)["quotation"]["id"]
    chain_id = _submit(client, users, qid, PARALLEL_STEPS)
    resp = client.post(f"/approval-chains/{chain_id}/decisions",
                       json={"step_index": 0, "decision": "approve", "revision_version": "abc"},
                       headers=_headers(users["manager"]))
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "ValidationError"
    assert body["details"]["field"] == "revision_version"


def test_list_quotations(client, users):
    first = _create(client, users)["quotation"]
    second = _create(client, users, client_reference="ACME")["quotation"]
    _submit(client, users, first["id"], PARALLEL_STEPS)

    everything = client.get("/quotations", headers=_headers(users["sales"])).get_json()
    assert everything["count"] == 2
    drafts = client.get("/quotations?status=draft", headers=_headers(users["sales"])).get_json()
    assert [q["id"] for q in drafts["quotations"]] == [second["id"]]
    both = client.get("/quotations?status=draft&status=pending_approval", headers=_headers(users["sales"]))
    assert both.get_json()["count"] == 2
    acme = client.get("/quotations?client_reference=ACME", headers=_headers(users["sales"])).get_json()
    assert [q["id"] for q in acme["quotations"]] == [second["id"]]

    assert client.get("/quotations?status=lost", headers=_headers(users["sales"])).status_code == 400
    assert client.get("/quotations?created_from=yesterday", headers=_headers(users["sales"])).status_code == 400


def test_duplicate_endpoint(client, users):
    source = _create(client, users)["quotation"]
    resp = client.post(f"/quotations/{source['id']}/duplicate", json={"title": "Website redesign v2"},
                       headers=_headers(users["sales"]))
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["quotation"]["status"] == "draft"
    assert body["quotation"]["title"] == "Website redesign v2"
    assert body["quotation"]["document_number"] != source["document_number"]
    assert body["quotation"]["grand_total"] == source["grand_total"]
    assert body["revision"]["version_number"] == 1
    assert body["events"] == ["quotation.duplicated"]

    missing = client.post("/quotations/9999/duplicate", json={}, headers=_headers(users["sales"]))
    assert missing.status_code == 404


def test_escalation_and_approval_history_endpoints(client, users):
    qid = _create(client, users)["quotation"]["id"]
    chain_id = _submit(client, users, qid, PARALLEL_STEPS)

    denied = client.post(f"/approval-chains/{chain_id}/escalate", json={"reason": "hurry"},
                         headers=_headers(users["sales"]))
    assert denied.status_code == 403
    no_reason = client.post(f"/approval-chains/{chain_id}/escalate", json={},
                            headers=_headers(users["manager"]))
    assert no_reason.status_code == 400

    resp = client.post(f"/approval-chains/{chain_id}/escalate", json={"reason": "client deadline"},
                       headers=_headers(users["manager"]))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["approval_chain"]["urgency"] == "high"
    assert body["approval_chain"]["escalation_reason"] == "client deadline"
    assert body["events"] == ["approval.escalated"]

    history = client.get(f"/quotations/{qid}/approval-chains", headers=_headers(users["sales"])).get_json()
    assert [c["id"] for c in history["approval_chains"]] == [chain_id]
    assert history["approval_chains"][0]["urgency"] == "high"
