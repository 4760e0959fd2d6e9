import json

import pytest
from sqlalchemy import select

import utils
from conftest import add_user, login_as
from models import AuditLog, Organization, Permission, User
from utils import ApiError, SimpleRateLimiter, parse_rate, redact_for_audit


def test_register_creates_organization_and_admin(db, api):
    out = api.ok("REGISTER", {"name": "Ada Admin", "email": "Ada@Acme.io", "password": "s3cret-pass", "company": "Acme Inc"})

    assert out["user"]["email"] == "ada@acme.io"
    assert out["user"]["role"] == "ADMIN"
    assert out["organization"]["slug"] == "acme-inc"
    assert out["organization"]["plan"] == "FREE"

    user = db.get(User, out["user"]["id"])
    assert user.organizationId == out["organization"]["id"]
    assert user.passwordHash != "s3cret-pass"


def test_register_slug_is_unique(api):
    first = api.ok("REGISTER", {"name": "One", "email": "one@acme.io", "password": "password-1", "company": "Acme"})
    second = api.ok("REGISTER", {"name": "Two", "email": "two@acme.io", "password": "password-2", "company": "Acme"})
    assert first["organization"]["slug"] == "acme"
    assert second["organization"]["slug"] == "acme-2"


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"name": "A", "email": "a@b.io", "password": "long-enough"}, "name must be at least 2 characters"),
        ({"name": "Ada", "email": "not-an-email", "password": "long-enough"}, "Invalid email"),
        ({"name": "Ada", "email": "a@b.io", "password": "short"}, "Password must be at least 8 characters"),
    ],
)
def test_register_validation(api, payload, message):
    status, body = api.call("REGISTER", payload)
    assert status == 400
    assert body["error"]["message"] == message


def test_register_duplicate_email_conflicts(api, admin):
    status, body = api.call("REGISTER", {"name": "Again", "email": "ADMIN@acme.io", "password": "whatever-1"})
    assert status == 409
    assert body["error"]["code"] == "CONFLICT"


def test_login_and_session_flow(api, admin):
    me = api.ok("GET_ME", {}, admin["token"])
    assert me["me"]["email"] == "admin@acme.io"
    assert me["me"]["lastLoginAt"]
    assert me["organization"]["name"] == "Acme"

    session = api.ok("SESSION_VALIDATE", {}, admin["token"])
    assert session["valid"] is True
    assert session["me"]["role"] == "ADMIN"
    assert session["me"]["organizationId"] == admin["organizationId"]

    assert api.ok("LOGOUT", {}, admin["token"]) == {"loggedOut": True, "revoked": True}

    status, body = api.call("SESSION_VALIDATE", {}, admin["token"])
    assert status == 401
    assert body["error"]["code"] == "AUTH_INVALID"


def test_login_rejects_bad_credentials(api, admin):
    status, body = api.call("LOGIN", {"email": "admin@acme.io", "password": "wrong-pass"})
    assert status == 401
    assert body["error"]["message"] == "Invalid credentials"

    status, body = api.call("LOGIN", {"email": "nobody@acme.io", "password": "s3cret-pass"})
    assert status == 401

    status, body = api.call("LOGIN", {"email": "admin@acme.io"})
    assert status == 400


def test_bearer_header_is_accepted(client, admin):
    resp = client.post("/api", json={"action": "GET_ME"}, headers={"Authorization": f"Bearer {admin['token']}"})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["me"]["email"] == "admin@acme.io"


def test_expired_sessions_are_rejected(api, admin, cfg):
    cfg.SESSION_TTL_MINUTES = 0
    token = api.ok("LOGIN", {"email": "admin@acme.io", "password": "s3cret-pass"})["sessionToken"]

    status, _ = api.call("GET_ME", {}, token)
    assert status == 401


def test_deactivated_user_loses_access(db, api, admin):
    user = db.get(User, admin["user"]["id"])
    user.isActive = False
    db.commit()

    status, _ = api.call("GET_ME", {}, admin["token"])
    assert status == 401

    status, body = api.call("LOGIN", {"email": "admin@acme.io", "password": "s3cret-pass"})
    assert status == 401
    assert body["error"]["message"] == "User is disabled"


def test_envelope_errors(client, api, admin):
    assert client.post("/api", data="").status_code == 400
    assert client.post("/api", data="{not json").get_json()["error"]["message"] == "Invalid JSON body"
    assert client.post("/api", data="[]").get_json()["error"]["message"] == "Body must be a JSON object"

    resp = client.post("/api", json={"token": admin["token"]})
    assert resp.get_json()["error"]["message"] == "Missing action"

    resp = client.post("/api", json={"action": "GET_ME", "token": admin["token"], "data": [1]})
    assert resp.status_code == 400

    status, body = api.call("SELF_DESTRUCT", {}, admin["token"])
    assert status == 400
    assert body["error"]["message"] == "Unknown action: SELF_DESTRUCT"

    status, _ = api.call("CANDIDATE_LIST", {})
    assert status == 401


def test_unknown_routes_and_methods(client):
    resp = client.get("/nowhere")
    assert resp.status_code == 404
    assert resp.get_json()["error"]["code"] == "NOT_FOUND"

    resp = client.get("/api")
    assert resp.status_code == 405


def test_role_permissions(db, api, admin):
    add_user(db, admin["organizationId"], "INTERVIEWER", "ivan@acme.io")
    token = login_as(api, "ivan@acme.io")

    assert api.ok("CANDIDATE_LIST", {}, token)["items"] == []
    status, body = api.call("CANDIDATE_DELETE", {"id": "x"}, token)
    assert status == 403
    assert body["error"]["message"] == "Insufficient permissions"


def test_permission_table_overrides_static_roles(db, api, admin):
    row = db.execute(select(Permission).where(Permission.permKey == "CANDIDATE_LIST")).scalar_one()
    row.enabled = False
    db.commit()

    status, _ = api.call("CANDIDATE_LIST", {}, admin["token"])
    assert status == 403

    # Session actions cannot be locked out.
    assert db.get(Permission, "GET_ME") is None
    assert api.ok("GET_ME", {}, admin["token"])["me"]["role"] == "ADMIN"


def test_login_rate_limit(api, cfg):
    cfg.RATE_LIMIT_LOGIN = "2 per minute"
    creds = {"email": "ghost@acme.io", "password": "nope-nope"}

    assert api.call("LOGIN", creds)[0] == 401
    assert api.call("LOGIN", creds)[0] == 401
    status, body = api.call("LOGIN", creds)
    assert status == 429
    assert body["error"]["code"] == "RATE_LIMITED"


def test_audit_rows_redact_secrets(db, api, admin):
    rows = db.execute(select(AuditLog).where(AuditLog.stageTag == "API_CALL", AuditLog.action == "LOGIN")).scalars().all()
    assert len(rows) == 1
    meta = json.loads(rows[0].metaJson)
    assert meta["data"]["password"] == "[REDACTED]"
    assert meta["data"]["email"] == "admin@acme.io"

    api.call("LOGIN", {"email": "admin@acme.io", "password": "wrong-pass"})
    error = db.execute(select(AuditLog).where(AuditLog.stageTag == "API_ERROR")).scalar_one()
    assert error.remark == "AUTH_INVALID: Invalid credentials"
    assert json.loads(error.metaJson)["data"]["password"] == "[REDACTED]"


def test_register_is_audited_with_new_organization(db, admin):
    row = db.execute(select(AuditLog).where(AuditLog.stageTag == "AUTH_REGISTER")).scalar_one()
    assert row.organizationId == admin["organizationId"]
    assert db.get(Organization, admin["organizationId"]).plan == "FREE"


def test_security_headers(client):
    resp = client.get("/")
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert "Strict-Transport-Security" not in resp.headers
    assert resp.get_json()["ok"] is True


def test_rate_limiter_windows(monkeypatch):
    clock = [100.0]
    monkeypatch.setattr(utils, "now_monotonic", lambda: clock[0])
    limiter = SimpleRateLimiter()

    assert limiter.check("ip:LOGIN", "2 per minute") == 1
    assert limiter.check("ip:LOGIN", "2 per minute") == 0
    with pytest.raises(ApiError) as exc:
        limiter.check("ip:LOGIN", "2 per minute")
    assert exc.value.http_status == 429

    assert limiter.check("other:LOGIN", "2 per minute") == 1

    clock[0] += 60
    assert limiter.check("ip:LOGIN", "2 per minute") == 1


def test_parse_rate():
    assert parse_rate("5/second") == (5, 1)
    assert parse_rate("100 per minute") == (100, 60)
    assert parse_rate("10 per hours") == (10, 3600)
    with pytest.raises(ValueError):
        parse_rate("lots")


def test_redact_for_audit_nested():
    data = {"userData": {"password": "x"}, "items": [{"token": "t", "name": "n"}], "note": "y" * 600}
    out = redact_for_audit(data)
    assert out["userData"] == "[REDACTED]"
    assert out["items"] == [{"token": "[REDACTED]", "name": "n"}]
    assert out["note"].endswith("...")
    assert len(out["note"]) == 503
