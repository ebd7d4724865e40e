"""Integration tests for the HTTP auth and RBAC flow.

Tests the complete flow including:
- Registration and login
- Token refresh and reuse detection
- Logout
- Permission-protected administration routes
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from aegis import app as app_module
from aegis.service.runtime import get_runtime

PASSWORD = "Password123"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="alice@example.com", username="alice", password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "password": password, "username": username},
    )


def _login(client, email="alice@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_token(client):
    account_id = _register(client, "root@example.com", "root").json()["data"]["id"]
    runtime = get_runtime()
    admin = asyncio.run(runtime.rbac.get_role_by_name("admin"))
    asyncio.run(runtime.rbac.assign_role(account_id, admin.id))
    return _login(client, "root@example.com").json()["data"]["access_token"]


class TestRegister:
    def test_register_creates_pending_account(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "alice@example.com"
        assert body["data"]["status"] == "pending"
        assert "password_hash" not in body["data"]

    def test_register_rejects_duplicate_email(self, client):
        _register(client)

        response = _register(client, "ALICE@example.com", "alice2")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["fields"][0]["field"] == "email"

    def test_register_rejects_weak_password(self, client):
        response = _register(client, password="password")

        assert response.status_code == 400
        assert response.json()["error"]["details"]["fields"][0]["field"] == "password"

    def test_register_rejects_unknown_fields(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "a@example.com", "password": PASSWORD, "username": "abc", "role": "admin"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestLoginFlow:
    def test_login_returns_token_pair(self, client):
        _register(client)

        response = _login(client)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["refresh_expires_in"] == 604800
        assert data["account"]["username"] == "alice"

    def test_wrong_password(self, client):
        _register(client)

        response = _login(client, password="Password999")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credential"

    def test_unknown_email_matches_wrong_password(self, client):
        _register(client)

        wrong = _login(client, password="Password999").json()["error"]
        unknown = _login(client, email="nobody@example.com").json()["error"]

        assert wrong == unknown

    def test_suspended_account_is_unauthorized(self, client):
        account_id = _register(client).json()["data"]["id"]
        runtime = get_runtime()
        asyncio.run(runtime.accounts.activate(account_id))
        asyncio.run(runtime.accounts.suspend(account_id))

        response = _login(client)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_returns_claims(self, client):
        _register(client)
        token = _login(client).json()["data"]["access_token"]

        response = client.get("/v1/auth/me", headers=_bearer(token))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["username"] == "alice"
        assert data["permissions"] == ["users:read"]

    def test_me_requires_bearer(self, client):
        assert client.get("/v1/auth/me").status_code == 401
        bad = client.get("/v1/auth/me", headers=_bearer("not.a.token"))
        assert bad.status_code == 401
        assert bad.json()["error"]["code"] == "unauthorized"


class TestRefreshFlow:
    def test_refresh_rotates_and_detects_reuse(self, client):
        _register(client)
        first = _login(client).json()["data"]

        rotated = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert rotated.status_code == 200
        second = rotated.json()["data"]
        assert second["refresh_token"] != first["refresh_token"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_credential"

        after = client.post("/v1/auth/refresh", json={"refresh_token": second["refresh_token"]})
        assert after.status_code == 401

    def test_logout_revokes_refresh_token(self, client):
        _register(client)
        tokens = _login(client).json()["data"]

        response = client.post("/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        assert response.status_code == 204

        again = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert again.status_code == 401

    def test_logout_unknown_token_succeeds(self, client):
        response = client.post("/v1/auth/logout", json={"refresh_token": "unknown"})

        assert response.status_code == 204

    def test_logout_all(self, client):
        _register(client)
        first = _login(client).json()["data"]
        _login(client)

        response = client.post("/v1/auth/logout-all", headers=_bearer(first["access_token"]))

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 2


class TestAdministration:
    def test_plain_user_is_forbidden(self, client):
        _register(client)
        token = _login(client).json()["data"]["access_token"]

        response = client.get("/v1/roles", headers=_bearer(token))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_plain_user_can_list_accounts(self, client):
        _register(client)
        token = _login(client).json()["data"]["access_token"]

        response = client.get("/v1/accounts", headers=_bearer(token))

        assert response.status_code == 200
        assert response.json()["data"]["total"] == 1

    def test_admin_manages_status(self, client, admin_token):
        account_id = _register(client).json()["data"]["id"]

        response = client.post(
            f"/v1/accounts/{account_id}/status",
            json={"status": "active"},
            headers=_bearer(admin_token),
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "active"
        assert response.json()["data"]["version"] == 2

        stale = client.post(
            f"/v1/accounts/{account_id}/status",
            json={"status": "suspended", "expected_version": 1},
            headers=_bearer(admin_token),
        )
        assert stale.status_code == 409
        assert stale.json()["error"]["code"] == "version_mismatch"

    def test_invalid_transition_is_422(self, client, admin_token):
        account_id = _register(client).json()["data"]["id"]

        response = client.post(
            f"/v1/accounts/{account_id}/status",
            json={"status": "suspended"},
            headers=_bearer(admin_token),
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "invalid_status_transition"

    def test_admin_builds_role_and_assigns_it(self, client, admin_token):
        account_id = _register(client).json()["data"]["id"]
        headers = _bearer(admin_token)

        perm = client.post(
            "/v1/permissions", json={"resource": "invoices", "action": "read"}, headers=headers
        )
        assert perm.status_code == 201
        role = client.post("/v1/roles", json={"name": "billing"}, headers=headers)
        assert role.status_code == 201
        role_id = role.json()["data"]["id"]
        perm_id = perm.json()["data"]["id"]

        granted = client.put(f"/v1/roles/{role_id}/permissions/{perm_id}", headers=headers)
        assert [p["resource"] for p in granted.json()["data"]["permissions"]] == ["invoices"]

        assigned = client.put(f"/v1/accounts/{account_id}/roles/{role_id}", headers=headers)
        assert sorted(r["name"] for r in assigned.json()["data"]) == ["billing", "user"]

        token = _login(client).json()["data"]["access_token"]
        me = client.get("/v1/auth/me", headers=_bearer(token)).json()["data"]
        assert me["permissions"] == ["invoices:read", "users:read"]

        removed = client.delete(f"/v1/accounts/{account_id}/roles/{role_id}", headers=headers)
        assert [r["name"] for r in removed.json()["data"]] == ["user"]

    def test_duplicate_role_is_conflict(self, client, admin_token):
        response = client.post("/v1/roles", json={"name": "admin"}, headers=_bearer(admin_token))

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "already_exists"

    def test_unknown_account_roles_is_404(self, client, admin_token):
        response = client.get("/v1/accounts/missing/roles", headers=_bearer(admin_token))

        assert response.status_code == 404


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["status"] == "healthy"
