"""Integration tests for the authentication flows.

Covers:
- Registration and email verification
- Login, logout and session listing
- MFA challenge, verification and code resend
- Malformed ids rejected at the boundary
- Lockout after repeated failures
- Token renewal near expiry (header and cookie)
- Password change and recovery
"""

import uuid
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from shopauth import app as app_module
from shopauth.api.routes import RENEWED_TOKEN_HEADER
from shopauth.service.runtime import get_runtime

PASSWORD = "CorrectHorse-42"
NEW_PASSWORD = "Battery-Staple-77"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def outbox(monkeypatch):
    """Capture codes and tokens the service would have emailed."""
    runtime = get_runtime()
    captured = {}

    def _capture(kind):
        def _send(to_email, payload=None, **kwargs):
            captured.setdefault(kind, []).append(payload)
            return True

        return _send

    monkeypatch.setattr(runtime.email, "send_email_verification", _capture("verification"))
    monkeypatch.setattr(runtime.email, "send_mfa_code", _capture("mfa"))
    monkeypatch.setattr(runtime.email, "send_recovery_code", _capture("recovery"))
    monkeypatch.setattr(runtime.email, "send_password_changed", _capture("changed"))
    return captured


def _unique_email(prefix="shopper"):
    return f"{prefix}_{uuid.uuid4().hex[:8]}@example.com"


def _register_active(client, outbox, email=None):
    email = email or _unique_email()
    resp = client.post("/v1/auth/register", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 201, resp.text
    token = outbox["verification"][-1]
    verify = client.post("/v1/auth/verify-email", json={"token": token})
    assert verify.status_code == 200, verify.text
    return email, resp.json()["data"]["user_id"]


def _login(client, email, password=PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_creates_pending_account(self, client, outbox):
        email = _unique_email()
        resp = client.post(
            "/v1/auth/register",
            json={"email": email.upper(), "password": PASSWORD, "name": "Ann", "phone": "+1 555 0100"},
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["email"] == email
        assert data["status"] == "pending"
        assert data["verification_email_sent"] is True
        assert "access_token" not in data

    def test_login_before_verification(self, client, outbox):
        email = _unique_email()
        client.post("/v1/auth/register", json={"email": email, "password": PASSWORD})
        resp = _login(client, email)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "account_pending"

    def test_duplicate_registration(self, client, outbox):
        email, _ = _register_active(client, outbox)
        resp = client.post("/v1/auth/register", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_weak_password_rejected(self, client, outbox):
        resp = client.post("/v1/auth/register", json={"email": _unique_email(), "password": "short"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_bad_verification_token(self, client):
        resp = client.post("/v1/auth/verify-email", json={"token": "nope"})
        assert resp.status_code == 400


class TestLoginLogout:
    def test_login_returns_token_and_cookie(self, client, outbox):
        email, user_id = _register_active(client, outbox)
        resp = _login(client, email)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user_id"] == user_id
        assert data["token_type"] == "bearer"
        assert data["client_class"] == "interactive"
        assert resp.cookies.get("token") == data["access_token"]
        assert resp.headers["Cache-Control"].startswith("no-store")

    def test_wrong_password_is_generic(self, client, outbox):
        email, _ = _register_active(client, outbox)
        wrong = _login(client, email, "not-the-password")
        unknown = _login(client, _unique_email(), "not-the-password")
        assert wrong.status_code == unknown.status_code == 400
        assert wrong.json()["error"]["code"] == unknown.json()["error"]["code"] == "invalid_credentials"
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]

    def test_session_endpoint_with_bearer(self, client, outbox):
        email, user_id = _register_active(client, outbox)
        token = _login(client, email).json()["data"]["access_token"]
        fresh = TestClient(app_module.app)
        resp = fresh.get("/v1/auth/session", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["data"]["user_id"] == user_id
        assert resp.json()["data"]["renewed"] is False

    def test_session_endpoint_with_cookie(self, client, outbox):
        email, user_id = _register_active(client, outbox)
        _login(client, email)
        resp = client.get("/v1/auth/session")
        assert resp.status_code == 200
        assert resp.json()["data"]["user_id"] == user_id

    def test_unauthenticated(self, client):
        resp = client.get("/v1/auth/session")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_not_found"

    def test_garbage_token(self, client):
        resp = client.get("/v1/auth/session", headers=_bearer("a.b.c"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

    def test_logout_revokes_token(self, client, outbox):
        email, _ = _register_active(client, outbox)
        token = _login(client, email).json()["data"]["access_token"]
        first = client.post("/v1/auth/logout", headers=_bearer(token))
        assert first.status_code == 200
        assert first.json()["data"]["already_revoked"] is False
        again = client.post("/v1/auth/logout", headers=_bearer(token))
        assert again.status_code == 200
        assert again.json()["data"]["already_revoked"] is True
        resp = TestClient(app_module.app).get("/v1/auth/session", headers=_bearer(token))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_revoked"

    def test_list_and_revoke_sessions(self, client, outbox):
        email, _ = _register_active(client, outbox)
        first = _login(client, email).json()["data"]
        second = _login(client, email).json()["data"]
        resp = client.get("/v1/auth/sessions", headers=_bearer(second["access_token"]))
        items = resp.json()["data"]["items"]
        assert {item["session_id"] for item in items} == {first["session_id"], second["session_id"]}
        assert [i["current"] for i in items if i["session_id"] == second["session_id"]] == [True]

        revoke = client.delete(
            f"/v1/auth/sessions/{first['session_id']}", headers=_bearer(second["access_token"])
        )
        assert revoke.status_code == 200
        check = TestClient(app_module.app).get("/v1/auth/session", headers=_bearer(first["access_token"]))
        assert check.status_code == 401

    def test_revoke_someone_elses_session(self, client, outbox):
        email_a, _ = _register_active(client, outbox)
        email_b, _ = _register_active(client, outbox)
        a = _login(client, email_a).json()["data"]
        b = _login(client, email_b).json()["data"]
        resp = client.delete(f"/v1/auth/sessions/{a['session_id']}", headers=_bearer(b["access_token"]))
        assert resp.status_code == 404

    def test_session_limit(self, client, outbox):
        email, _ = _register_active(client, outbox)
        for _ in range(5):
            assert _login(client, email).status_code == 200
        resp = _login(client, email)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "session_limit_reached"
        assert resp.json()["error"]["details"] == {"limit": 5}

    def test_api_client_session(self, client, outbox):
        email, _ = _register_active(client, outbox)
        data = _login(client, email, client_id="alexa").json()["data"]
        assert data["client_class"] == "api"


class TestLockout:
    def test_lock_after_repeated_failures(self, client, outbox):
        email, _ = _register_active(client, outbox)
        for _ in range(4):
            assert _login(client, email, "not-the-password").status_code == 400
        locked = _login(client, email, "not-the-password")
        assert locked.status_code == 403
        assert locked.json()["error"]["code"] == "account_locked"
        assert _login(client, email).json()["error"]["code"] == "account_locked"

    def test_recovery_unlocks(self, client, outbox):
        email, _ = _register_active(client, outbox)
        for _ in range(5):
            _login(client, email, "not-the-password")
        assert client.post("/v1/auth/password/recovery", json={"email": email}).status_code == 200
        resp = client.post(
            "/v1/auth/password/reset",
            json={"email": email, "code": outbox["recovery"][-1], "new_password": NEW_PASSWORD},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["account_unlocked"] is True
        assert _login(client, email, NEW_PASSWORD).status_code == 200


class TestMfa:
    def _enable_mfa(self, client, email):
        token = _login(client, email).json()["data"]["access_token"]
        resp = client.put("/v1/auth/mfa", json={"enabled": True}, headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["data"]["mfa_enabled"] is True
        client.post("/v1/auth/logout", headers=_bearer(token))

    def test_login_challenge_then_verify(self, client, outbox):
        email, user_id = _register_active(client, outbox)
        self._enable_mfa(client, email)
        challenge = _login(client, email)
        assert challenge.status_code == 200
        assert challenge.json()["data"] == {"mfa_required": True, "user_id": user_id, "delivery": "sent"}
        assert "token" not in challenge.cookies

        resp = client.post(
            "/v1/auth/mfa/verify-otp",
            json={"user_id": user_id, "code": outbox["mfa"][-1]},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["access_token"]

    def test_wrong_codes(self, client, outbox):
        email, user_id = _register_active(client, outbox)
        self._enable_mfa(client, email)
        _login(client, email)
        for remaining in (2, 1, 0):
            resp = client.post("/v1/auth/mfa/verify-otp", json={"user_id": user_id, "code": "WRONG000"})
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "mfa_invalid_code"
            assert resp.json()["error"]["details"]["attempts_remaining"] == remaining
        resp = client.post("/v1/auth/mfa/verify-otp", json={"user_id": user_id, "code": outbox["mfa"][-1]})
        assert resp.json()["error"]["code"] == "mfa_expired"

    def test_resend_code(self, client, outbox):
        email, user_id = _register_active(client, outbox)
        self._enable_mfa(client, email)
        _login(client, email)
        first = outbox["mfa"][-1]
        resp = client.post("/v1/auth/mfa/send-otp", json={"user_id": user_id})
        assert resp.status_code == 200
        assert resp.json()["data"] == {"mfa_required": True, "user_id": user_id, "delivery": "sent"}
        second = outbox["mfa"][-1]

        stale = client.post("/v1/auth/mfa/verify-otp", json={"user_id": user_id, "code": first})
        assert stale.json()["error"]["code"] == "mfa_invalid_code"
        ok = client.post("/v1/auth/mfa/verify-otp", json={"user_id": user_id, "code": second})
        assert ok.status_code == 200

    def test_resend_requires_pending_login(self, client, outbox):
        email, user_id = _register_active(client, outbox)
        self._enable_mfa(client, email)
        resp = client.post("/v1/auth/mfa/send-otp", json={"user_id": user_id})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "mfa_expired"
        assert "mfa" not in outbox


class TestMalformedIds:
    def test_verify_otp_with_non_uuid_user(self, client):
        resp = client.post("/v1/auth/mfa/verify-otp", json={"user_id": "abc", "code": "ABCDEFGH"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_resend_with_non_uuid_user(self, client):
        resp = client.post("/v1/auth/mfa/send-otp", json={"user_id": "abc"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_revoke_non_uuid_session(self, client, outbox):
        email, _ = _register_active(client, outbox)
        token = _login(client, email).json()["data"]["access_token"]
        resp = client.delete("/v1/auth/sessions/abc", headers=_bearer(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestRenewal:
    def _shift(self, monkeypatch, seconds):
        sessions = get_runtime().sessions
        real_now = sessions._now
        moment = real_now() + timedelta(seconds=seconds)
        monkeypatch.setattr(sessions, "_now", lambda: moment)

    def test_renewed_token_in_header(self, client, outbox, monkeypatch):
        email, _ = _register_active(client, outbox)
        token = _login(client, email).json()["data"]["access_token"]
        self._shift(monkeypatch, 700)
        resp = TestClient(app_module.app).get("/v1/auth/session", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["data"]["renewed"] is True
        new_token = resp.headers[RENEWED_TOKEN_HEADER]
        assert new_token != token
        assert resp.cookies.get("token") == new_token

        old = TestClient(app_module.app).get("/v1/auth/session", headers=_bearer(token))
        assert old.status_code == 401
        ok = TestClient(app_module.app).get("/v1/auth/session", headers=_bearer(new_token))
        assert ok.status_code == 200
        assert RENEWED_TOKEN_HEADER not in ok.headers

    def test_cookie_follows_renewal(self, client, outbox, monkeypatch):
        email, _ = _register_active(client, outbox)
        _login(client, email)
        self._shift(monkeypatch, 700)
        first = client.get("/v1/auth/session")
        assert first.json()["data"]["renewed"] is True
        second = client.get("/v1/auth/session")
        assert second.status_code == 200
        assert second.json()["data"]["renewed"] is False

    def test_expired_token(self, client, outbox, monkeypatch):
        email, _ = _register_active(client, outbox)
        token = _login(client, email).json()["data"]["access_token"]
        self._shift(monkeypatch, 2000)
        resp = TestClient(app_module.app).get("/v1/auth/session", headers=_bearer(token))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_expired"


class TestPasswords:
    def test_change_password_revokes_all_sessions(self, client, outbox):
        email, _ = _register_active(client, outbox)
        other = _login(client, email).json()["data"]["access_token"]
        token = _login(client, email).json()["data"]["access_token"]
        resp = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers=_bearer(token),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["sessions_revoked"] == 2
        assert resp.json()["data"]["notification_sent"] is True
        assert outbox["changed"]
        fresh = TestClient(app_module.app)
        assert fresh.get("/v1/auth/session", headers=_bearer(other)).status_code == 401
        assert _login(fresh, email, NEW_PASSWORD).status_code == 200

    def test_change_to_previous_password(self, client, outbox):
        email, _ = _register_active(client, outbox)
        token = _login(client, email).json()["data"]["access_token"]
        resp = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": PASSWORD},
            headers=_bearer(token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "password_reused"

    def test_recovery_request_does_not_leak_accounts(self, client, outbox):
        email, _ = _register_active(client, outbox)
        known = client.post("/v1/auth/password/recovery", json={"email": email})
        unknown = client.post("/v1/auth/password/recovery", json={"email": _unique_email()})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert len(outbox["recovery"]) == 1


class TestHealth:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_request_id_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
