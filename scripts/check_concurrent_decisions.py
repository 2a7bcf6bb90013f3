# scripts/check_concurrent_decisions.py
"""
Fire two approval decisions on parallel steps of the same chain at the same
moment against a running server, then check that both landed and the
quotation reached Approved.

Prerequisites: server running at BASE_URL and users seeded with
scripts/seed_users.py against the same database (QUOTEFLOW_DB_PATH).
"""
import os
import sys
import sqlite3
import threading
import datetime
import platform
from pathlib import Path

import requests

SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent

BASE_URL = os.environ.get("BASE_URL", "http://127.0.0.1:5000").rstrip("/")
TIMEOUT = 10


def get_db_path() -> str:
    env_path = os.environ.get("QUOTEFLOW_DB_PATH")
    if env_path and os.path.exists(env_path):
        return env_path
    path1 = PROJECT_ROOT / "quotations.db"
    if path1.exists():
        return str(path1)
    raise FileNotFoundError("quotations.db not found (set QUOTEFLOW_DB_PATH or run scripts/seed_users.py)")


def user_id_for(login_id: str) -> int:
    conn = sqlite3.connect(get_db_path())
    try:
        row = conn.execute("SELECT id FROM users WHERE login_id=?", (login_id,)).fetchone()
        if not row:
            raise RuntimeError(f"user {login_id!r} not found; run scripts/seed_users.py first")
        return row[0]
    finally:
        conn.close()


def call(method: str, path: str, user_id: int, body=None) -> requests.Response:
    return requests.request(
        method,
        BASE_URL + path,
        json=body,
        headers={"X-User-Id": str(user_id)},
        timeout=TIMEOUT,
    )


def decide(chain_id: int, step_index: int, user_id: int, results: list, idx: int) -> None:
    try:
        r = call("POST", f"/approval-chains/{chain_id}/decisions", user_id,
                 {"step_index": step_index, "decision": "approve", "comment": f"approve-{idx}"})
        results[idx] = (r.status_code, r.json())
    except Exception as e:
        results[idx] = ("EXC", str(e))


def main() -> int:
    print(f"[INFO] BASE_URL={BASE_URL}")
    print(f"[INFO] python={sys.executable} platform={platform.platform()}")
    print(f"[INFO] started={datetime.datetime.now().isoformat()}")

    sales = user_id_for("sales")
    manager = user_id_for("manager")
    finance = user_id_for("finance")

    r = call("POST", "/quotations", sales, {
        "title": f"concurrency check {int(datetime.datetime.now().timestamp())}",
        "items": [{"description": "Consulting", "quantity": 2, "unit_price": "100", "tax_rate": 10}],
    })
    r.raise_for_status()
    quotation = r.json()["quotation"]

    r = call("POST", f"/quotations/{quotation['id']}/submit", sales, {
        "expected_version": quotation["version"],
        "steps": [
            {"step_index": 0, "required_roles": ["manager"]},
            {"step_index": 0, "required_roles": ["finance"]},
        ],
    })
    r.raise_for_status()
    chain_id = r.json()["approval_chain"]["id"]
    print(f"[INFO] quotation_id={quotation['id']} chain_id={chain_id}")

    results = [None, None]
    threads = [
        threading.Thread(target=decide, args=(chain_id, 0, manager, results, 0)),
        threading.Thread(target=decide, args=(chain_id, 0, finance, results, 1)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    failures = []
    for idx, (status, body) in enumerate(results):
        print(f"[INFO] decision {idx}: status={status} body={body}")
        if status != 200:
            failures.append(f"decision {idx} returned {status}")

    final = call("GET", f"/quotations/{quotation['id']}", sales).json()["quotation"]
    chain = call("GET", f"/approval-chains/{chain_id}", sales).json()["approval_chain"]
    decisions = [s["decision"] for s in chain["steps"]]
    print(f"[INFO] final status={final['status']} chain verdict={chain['verdict']} steps={decisions}")
    if final["status"] != "approved":
        failures.append(f"quotation status is {final['status']}, expected approved")
    if decisions != ["approved", "approved"]:
        failures.append(f"step decisions are {decisions}")

    if failures:
        for f in failures:
            print(f"FAIL: {f}")
        return 1
    print("PASS: both parallel decisions recorded")
    return 0


if __name__ == "__main__":
    sys.exit(main())
