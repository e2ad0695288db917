"""Integration tests for admin operations.

Tests admin-only functionality including:
- Unlocking and locking accounts
- Revoking a user's sessions
- Reading and patching the security configuration
- Failed login report
- Role enforcement on admin routes
"""

import uuid

import pytest
from fastapi.testclient import TestClient

from shopauth import app as app_module
from shopauth.service.runtime import get_runtime

PASSWORD = "CorrectHorse-42"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _create_user(role="customer", status="active"):
    """Create an account directly in the store (in tests only)."""
    runtime = get_runtime()
    email = f"{role}_{uuid.uuid4().hex[:8]}@example.com"
    user = runtime.store.create_user(
        email, runtime.credentials.hash(PASSWORD), role=role, status=status
    )
    return user


def _login_headers(client, email):
    resp = client.post("/v1/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, f"Login failed: {resp.text}"
    return {"Authorization": f"Bearer {resp.json()['data']['access_token']}"}


@pytest.fixture
def admin_user(client):
    user = _create_user(role="admin")
    return {"user_id": user.id, "headers": _login_headers(client, user.email)}


@pytest.fixture
def regular_user(client):
    user = _create_user()
    return {"user_id": user.id, "email": user.email, "headers": _login_headers(client, user.email)}


class TestRoleEnforcement:
    def test_customer_cannot_reach_admin_routes(self, client, regular_user):
        resp = client.get("/v1/admin/security-config", headers=regular_user["headers"])
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_anonymous_cannot_reach_admin_routes(self):
        resp = TestClient(app_module.app).post(f"/v1/admin/users/{uuid.uuid4()}/unlock")
        assert resp.status_code == 401

    def test_admin_can_use_customer_routes(self, client, admin_user):
        resp = client.get("/v1/auth/session", headers=admin_user["headers"])
        assert resp.status_code == 200
        assert resp.json()["data"]["role"] == "admin"

    def test_admin_session_cap(self, client, admin_user):
        runtime = get_runtime()
        admin = runtime.store.get_user(admin_user["user_id"])
        _login_headers(client, admin.email)
        resp = client.post("/v1/auth/login", json={"email": admin.email, "password": PASSWORD})
        assert resp.status_code == 403
        assert resp.json()["error"]["details"] == {"limit": 2}


class TestAccountLocks:
    def test_unlock_permanently_locked_account(self, client, admin_user):
        target = _create_user(status="locked_permanent")
        blocked = client.post("/v1/auth/login", json={"email": target.email, "password": PASSWORD})
        assert blocked.json()["error"]["code"] == "account_locked_permanent"

        resp = client.post(f"/v1/admin/users/{target.id}/unlock", headers=admin_user["headers"])
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "active"
        login = client.post("/v1/auth/login", json={"email": target.email, "password": PASSWORD})
        assert login.status_code == 200

    def test_unlock_active_account_is_rejected(self, client, admin_user, regular_user):
        resp = client.post(
            f"/v1/admin/users/{regular_user['user_id']}/unlock", headers=admin_user["headers"]
        )
        assert resp.status_code == 400

    def test_unlock_unknown_user(self, client, admin_user):
        resp = client.post(f"/v1/admin/users/{uuid.uuid4()}/unlock", headers=admin_user["headers"])
        assert resp.status_code == 404

    def test_lock_revokes_sessions(self, client, admin_user, regular_user):
        resp = client.post(
            f"/v1/admin/users/{regular_user['user_id']}/lock", headers=admin_user["headers"]
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "locked_temporary"
        check = TestClient(app_module.app).get("/v1/auth/session", headers=regular_user["headers"])
        assert check.status_code == 401
        assert check.json()["error"]["code"] == "session_revoked"
        login = client.post("/v1/auth/login", json={"email": regular_user["email"], "password": PASSWORD})
        assert login.json()["error"]["code"] == "account_locked"

    def test_revoke_user_sessions(self, client, admin_user, regular_user):
        resp = client.post(
            f"/v1/admin/users/{regular_user['user_id']}/sessions/revoke",
            headers=admin_user["headers"],
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["sessions_revoked"] == 1
        check = TestClient(app_module.app).get("/v1/auth/session", headers=regular_user["headers"])
        assert check.status_code == 401


class TestSecurityConfig:
    def test_read_defaults(self, client, admin_user):
        resp = client.get("/v1/admin/security-config", headers=admin_user["headers"])
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["session_lifetime"] == 900
        assert data["max_failed_login_attempts"] == 5

    def test_patch_applies_to_next_login(self, client, admin_user, regular_user):
        resp = client.patch(
            "/v1/admin/security-config",
            json={"max_failed_login_attempts": 3},
            headers=admin_user["headers"],
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["max_failed_login_attempts"] == 3

        for _ in range(2):
            client.post("/v1/auth/login", json={"email": regular_user["email"], "password": "nope-nope"})
        locked = client.post("/v1/auth/login", json={"email": regular_user["email"], "password": "nope-nope"})
        assert locked.json()["error"]["code"] == "account_locked"

    def test_patch_out_of_range(self, client, admin_user):
        resp = client.patch(
            "/v1/admin/security-config",
            json={"session_lifetime": 10},
            headers=admin_user["headers"],
        )
        assert resp.status_code == 400
        current = client.get("/v1/admin/security-config", headers=admin_user["headers"])
        assert current.json()["data"]["session_lifetime"] == 900

    def test_patch_unknown_field(self, client, admin_user):
        resp = client.patch(
            "/v1/admin/security-config",
            json={"lockout_minutes": 10},
            headers=admin_user["headers"],
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_customer_cannot_patch(self, client, regular_user):
        resp = client.patch(
            "/v1/admin/security-config",
            json={"max_failed_login_attempts": 3},
            headers=regular_user["headers"],
        )
        assert resp.status_code == 403


class TestFailedAttemptReport:
    def test_report_groups_by_role(self, client, admin_user):
        shopper = _create_user()
        operator = _create_user(role="admin")
        for _ in range(3):
            client.post("/v1/auth/login", json={"email": shopper.email, "password": "nope-nope"})
        client.post("/v1/auth/login", json={"email": operator.email, "password": "nope-nope"})

        resp = client.get("/v1/admin/failed-attempts?period=week", headers=admin_user["headers"])
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["period"] == "week"
        customers = {row["user_id"]: row for row in data["customers"]}
        admins = {row["user_id"]: row for row in data["admins"]}
        assert customers[shopper.id]["attempts"] == 3
        assert customers[shopper.id]["email"] == shopper.email
        assert admins[operator.id]["attempts"] == 1
        assert operator.id not in customers

    def test_default_period_is_a_day(self, client, admin_user):
        resp = client.get("/v1/admin/failed-attempts", headers=admin_user["headers"])
        assert resp.status_code == 200
        assert resp.json()["data"]["period"] == "day"

    def test_unknown_period(self, client, admin_user):
        resp = client.get("/v1/admin/failed-attempts?period=year", headers=admin_user["headers"])
        assert resp.status_code == 400
        assert resp.json()["error"]["details"]["allowed"] == ["day", "month", "week"]

    def test_customer_cannot_read_report(self, client, regular_user):
        resp = client.get("/v1/admin/failed-attempts", headers=regular_user["headers"])
        assert resp.status_code == 403


class TestMalformedIds:
    @pytest.mark.parametrize("action", ["unlock", "lock", "sessions/revoke"])
    def test_non_uuid_user_id(self, client, admin_user, action):
        resp = client.post(f"/v1/admin/users/abc/{action}", headers=admin_user["headers"])
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"
