import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import bearer, order_payload
from invoice_gateway.deps import get_accounts, get_audit_log, get_invoice_handler, get_ledger
from invoice_gateway.main import app
from invoice_gateway.utils.audit import AuditEntry

INVOICE_URL = "/functions/v1/create-square-invoice"


@pytest.fixture
def client(handler, accounts, ledger, audit):
    app.dependency_overrides[get_invoice_handler] = lambda: handler
    app.dependency_overrides[get_accounts] = lambda: accounts
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_audit_log] = lambda: audit
    # no `with`: the lifespan (schema setup, Square client) stays out of unit tests
    yield TestClient(app)
    app.dependency_overrides.clear()


def _auth(user_id="user-1", email="rep@example.com"):
    return {"Authorization": bearer(user_id=user_id, email=email)}


# ---------------- invoice endpoint ----------------
def test_create_invoice(client, audit):
    r = client.post(INVOICE_URL, json=order_payload(), headers=_auth())

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert r.headers["X-Correlation-ID"] == body["correlation_id"]
    assert r.headers["Access-Control-Allow-Origin"] == "*"
    assert audit.entries[0].correlation_id == body["correlation_id"]


def test_correlation_ids_are_unique(client):
    a = client.post(INVOICE_URL, json=order_payload(order_number="A1"), headers=_auth())
    b = client.post(INVOICE_URL, json=order_payload(order_number="A2"), headers=_auth())
    assert a.json()["correlation_id"] != b.json()["correlation_id"]


def test_missing_auth_checked_before_body(client):
    r = client.post(INVOICE_URL, content=b"not json at all")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "AUTH_MISSING"
    assert r.headers["X-Correlation-ID"] == r.json()["correlation_id"]


def test_malformed_body_uses_error_envelope(client):
    r = client.post(INVOICE_URL, content=b"{", headers={**_auth(), "Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_MISSING_FIELD"


def test_duplicate_returns_409(client):
    client.post(INVOICE_URL, json=order_payload(), headers=_auth())
    r = client.post(INVOICE_URL, json=order_payload(), headers=_auth())
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "DUPLICATE_ORDER"


def test_rate_limited_response_carries_retry_after(client, audit):
    for i in range(10):
        audit.insert(AuditEntry(correlation_id=f"seed-{i}", result="SUCCESS", user_id="user-1"))
    r = client.post(INVOICE_URL, json=order_payload(), headers=_auth())
    assert r.status_code == 429
    assert r.json()["error"]["retry_after"] == 3600


def test_preflight(client):
    r = client.options(INVOICE_URL)
    assert r.status_code == 200
    assert "POST" in r.headers["Access-Control-Allow-Methods"]


@pytest.mark.parametrize("method", ["get", "put", "delete"])
def test_other_methods_rejected(client, method):
    r = getattr(client, method)(INVOICE_URL)
    assert r.status_code == 405
    body = r.json()
    assert body["success"] is False
    assert body["error"] == {"code": "INTERNAL_ERROR", "message": "Method not allowed"}
    assert r.headers["X-Correlation-ID"] == body["correlation_id"]


# ---------------- order status ----------------
def test_order_status_unknown(client):
    r = client.get("/orders/9999", headers=_auth())
    assert r.status_code == 200
    assert r.json() == {"exists": False}


def test_order_status_after_invoice(client):
    client.post(INVOICE_URL, json=order_payload(), headers=_auth())
    r = client.get("/orders/7600", headers=_auth())

    body = r.json()
    assert body["exists"] is True
    assert body["status"] == "completed"
    assert body["square_invoice_id"]
    assert body["steps_completed"][-1] == "invoice_published"


def test_order_status_requires_role(client):
    r = client.get("/orders/7600", headers=_auth("user-2", "viewer@example.com"))
    assert r.status_code == 403


def test_order_status_requires_token(client):
    assert client.get("/orders/7600").status_code == 401


# ---------------- auth ----------------
def test_login_and_me(client, accounts):
    accounts.add_user("user-3", "new@example.com", password="s3cret-pass", roles=("invoicer",))

    r = client.post("/auth/login", json={"email": "new@example.com", "password": "s3cret-pass"})
    assert r.status_code == 200
    token = r.json()["access_token"]
    assert r.json()["token_type"] == "bearer"

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me == {"id": "user-3", "email": "new@example.com", "roles": ["invoicer"]}


def test_login_wrong_password(client, accounts):
    accounts.add_user("user-3", "new@example.com", password="s3cret-pass")
    r = client.post("/auth/login", json={"email": "new@example.com", "password": "nope"})
    assert r.status_code == 401


def test_login_unknown_email(client):
    r = client.post("/auth/login", json={"email": "nobody@example.com", "password": "x"})
    assert r.status_code == 401


def test_me_with_expired_token(client):
    r = client.get("/auth/me", headers={"Authorization": bearer(expires_minutes=-1)})
    assert r.status_code == 401
    assert r.json()["detail"] == "Session expired"


# ---------------- admin ----------------
AUDITOR = ("auditor-1", "audit@example.com")


def test_grant_and_revoke_invoicer(client, accounts):
    r = client.post("/admin/invoicers", json={"user_id": "user-2"}, headers=_auth(*AUDITOR))
    assert r.status_code == 201
    assert accounts.is_authorized_invoicer("user-2")

    r = client.post("/admin/invoicers", json={"user_id": "user-2"}, headers=_auth(*AUDITOR))
    assert r.status_code == 409

    r = client.delete("/admin/invoicers/user-2", headers=_auth(*AUDITOR))
    assert r.status_code == 200
    assert r.json()["revoked"] == 1
    assert not accounts.is_authorized_invoicer("user-2")

    assert client.delete("/admin/invoicers/user-2", headers=_auth(*AUDITOR)).status_code == 404


def test_grant_unknown_user(client):
    r = client.post("/admin/invoicers", json={"user_id": "ghost"}, headers=_auth(*AUDITOR))
    assert r.status_code == 404


def test_revoked_invoicer_is_refused(client):
    client.delete("/admin/invoicers/user-1", headers=_auth(*AUDITOR))
    r = client.post(INVOICE_URL, json=order_payload(), headers=_auth())
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "UNAUTHORIZED"


def test_admin_requires_auditor(client):
    r = client.post("/admin/invoicers", json={"user_id": "user-2"}, headers=_auth())
    assert r.status_code == 403
    assert client.get("/admin/audit", headers=_auth()).status_code == 403


def test_audit_search_by_correlation_id(client):
    created = client.post(INVOICE_URL, json=order_payload(), headers=_auth()).json()
    client.post(INVOICE_URL, content=json.dumps({}), headers=_auth())

    r = client.get(
        "/admin/audit",
        params={"correlation_id": created["correlation_id"]},
        headers=_auth(*AUDITOR),
    )
    assert r.status_code == 200
    [row] = r.json()
    assert row["result"] == "SUCCESS"


def test_audit_search_rejects_unknown_result(client):
    r = client.get("/admin/audit", params={"result": "NOPE"}, headers=_auth(*AUDITOR))
    assert r.status_code == 422


def test_stats(client, audit):
    # the stats window is measured from the wall clock
    audit.clock = lambda: datetime.now(timezone.utc)
    client.post(INVOICE_URL, json=order_payload(), headers=_auth())
    r = client.get("/admin/stats", headers=_auth(*AUDITOR))
    body = r.json()
    assert body["orders"]["completed"] == 1
    assert body["invoice_attempts_last_hour"] == 1


def test_health(client):
    assert client.get("/health").json() == {"ok": True}
