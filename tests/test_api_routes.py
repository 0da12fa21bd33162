"""
tests/test_api_routes.py -- Integration tests for the JSON API.

These tests exercise the full stack: FastAPI routing -> auth dependency injection
-> UserStore/GroupStore operations -> response model serialization.

Coverage:
  - Auth failures: 401 without a token, 403 for non-admins
  - POST /auth/login: password, OTP step, lockout codes, required_actions
  - GET /auth/me, GET /auth/providers
  - User management: create, list, patch (self-modification guard), delete, 2FA reset
  - Application settings and terms
  - Groups and memberships

Fixtures used (from conftest.py):
  - api_client: (client, token, uid) -- TestClient with admin JWT.
    The fixture creates an admin user with username="testadmin", password="testpass123".
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from auth.otp import current_otp, generate_otp_secret
from core import messages

ApiClient = tuple[TestClient, str, int]


@pytest.fixture(autouse=True)
def _clear_cookies(api_client: ApiClient):
    """POST /auth/login sets the JWT cookie on the shared client; drop it after each test."""
    yield
    api_client[0].cookies.clear()


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _create_user(client: TestClient, token: str, username: str, **extra) -> dict:
    body = {"username": username, "email": f"{username}@example.com", "password": "password123", **extra}
    resp = client.post("/api/v1/auth/users", json=body, headers=_auth(token))
    assert resp.status_code == 201, resp.text
    return resp.json()


def _user_token(client: TestClient, username: str) -> str:
    resp = client.post("/api/v1/auth/login", json={"login": username, "password": "password123"})
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


class TestApiAuthFailure:
    """Unauthenticated requests to protected API routes must return 401."""

    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/api/v1/auth/me"),
            ("get", "/api/v1/auth/users"),
            ("get", "/api/v1/groups"),
            ("get", "/api/v1/application/settings"),
            ("get", "/docs"),
        ],
    )
    def test_unauthenticated(self, api_client: ApiClient, method: str, path: str) -> None:
        client, _token, _uid = api_client
        resp = getattr(client, method)(path)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_garbage_token(self, api_client: ApiClient) -> None:
        client, _token, _uid = api_client
        assert client.get("/api/v1/auth/me", headers=_auth("not-a-jwt")).status_code == 401

    def test_non_admin_forbidden(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        _create_user(client, token, "plainuser")
        user_token = _user_token(client, "plainuser")
        client.cookies.clear()
        resp = client.get("/api/v1/auth/users", headers=_auth(user_token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"


class TestApiLogin:
    def test_login_valid_credentials(self, api_client: ApiClient) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"login": "testadmin", "password": "testpass123"})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["username"] == "testadmin"
        assert data["required_actions"] == []
        assert resp.headers["cache-control"] == "no-store"
        assert "access_token" in resp.cookies

    def test_login_invalid_credentials(self, api_client: ApiClient) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"login": "testadmin", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["error"] == {"code": "bad_credentials", "message": messages.INVALID_LOGIN}

    def test_login_unknown_user_same_error(self, api_client: ApiClient) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"login": "ghost-of-nobody", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_login_blocked(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        user = _create_user(client, token, "blockme")
        client.patch(f"/api/v1/auth/users/{user['id']}", json={"state": "blocked"}, headers=_auth(token))
        resp = client.post("/api/v1/auth/login", json={"login": "blockme", "password": "password123"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "blocked"

    def test_login_two_factor(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        user = _create_user(client, token, "otpuser")
        store = client.app.state.user_store
        secret = generate_otp_secret()
        store.update_user(user["id"], otp_secret=secret, otp_required_for_login=True)

        resp = client.post("/api/v1/auth/login", json={"login": "otpuser", "password": "password123"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "two_factor_required"

        resp = client.post(
            "/api/v1/auth/login", json={"login": "otpuser", "password": "password123", "otp_attempt": "abcdef"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_otp"
        assert store.get_by_id(user["id"]).failed_attempts == 1

        resp = client.post(
            "/api/v1/auth/login",
            json={"login": "otpuser", "password": "password123", "otp_attempt": current_otp(secret)},
        )
        assert resp.status_code == 200, resp.text

    def test_login_reports_required_actions(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        user = _create_user(client, token, "expired")
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        client.patch(f"/api/v1/auth/users/{user['id']}", json={"password_expires_at": past}, headers=_auth(token))
        resp = client.post("/api/v1/auth/login", json={"login": "expired", "password": "password123"})
        assert resp.status_code == 200
        assert resp.json()["required_actions"] == ["password_expired"]

    def test_expiry_without_offset_is_read_as_utc(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        user = _create_user(client, token, "naiveexpiry")
        resp = client.patch(
            f"/api/v1/auth/users/{user['id']}", json={"password_expires_at": "2018-05-08T11:29:46"}, headers=_auth(token)
        )
        assert resp.status_code == 200
        stored = client.app.state.user_store.get_by_id(user["id"]).password_expires_at
        assert stored == "2018-05-08T11:29:46+00:00"

        resp = client.post("/api/v1/auth/login", json={"login": "naiveexpiry", "password": "password123"})
        assert resp.status_code == 200
        assert resp.json()["required_actions"] == ["password_expired"]
        user_token = resp.json()["access_token"]
        client.cookies.clear()
        me = client.get("/api/v1/auth/me", headers=_auth(user_token))
        assert me.status_code == 200
        assert me.json()["required_actions"] == ["password_expired"]

    def test_expiry_with_offset_is_stored_in_utc(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        user = _create_user(client, token, "offsetexpiry")
        client.patch(
            f"/api/v1/auth/users/{user['id']}",
            json={"password_expires_at": "2099-01-01T02:00:00+02:00"},
            headers=_auth(token),
        )
        stored = client.app.state.user_store.get_by_id(user["id"]).password_expires_at
        assert stored == "2099-01-01T00:00:00+00:00"

    def test_login_password_auth_disabled(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        client.patch(
            "/api/v1/application/settings", json={"password_authentication_enabled": False}, headers=_auth(token)
        )
        try:
            resp = client.post("/api/v1/auth/login", json={"login": "testadmin", "password": "testpass123"})
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "password_authentication_disabled"
        finally:
            client.patch(
                "/api/v1/application/settings", json={"password_authentication_enabled": True}, headers=_auth(token)
            )

    def test_logout_clears_cookie(self, api_client: ApiClient) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert 'access_token=""' in resp.headers["set-cookie"]


class TestApiMe:
    def test_me_authenticated(self, api_client: ApiClient) -> None:
        client, token, uid = api_client
        resp = client.get("/api/v1/auth/me", headers=_auth(token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["user_id"] == uid
        assert data["username"] == "testadmin"
        assert data["role"] == "admin"
        assert data["two_factor_enabled"] is False

    def test_providers_public(self, api_client: ApiClient) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/providers")
        assert resp.status_code == 200
        assert isinstance(resp.json(), list)


class TestApiUsers:
    def test_create_and_list(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        data = _create_user(client, token, "Carol", email="Carol@Example.com")
        assert data["email"] == "carol@example.com"
        assert data["role"] == "user"
        usernames = [u["username"] for u in client.get("/api/v1/auth/users", headers=_auth(token)).json()]
        assert "Carol" in usernames

    def test_create_duplicate(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        _create_user(client, token, "dupe")
        resp = client.post(
            "/api/v1/auth/users",
            json={"username": "dupe", "email": "other-dupe@example.com"},
            headers=_auth(token),
        )
        assert resp.status_code == 409

    def test_create_validation(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        resp = client.post(
            "/api/v1/auth/users", json={"username": "bad name!", "email": "x@example.com"}, headers=_auth(token)
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_create_without_password(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        data = _create_user(client, token, "nopass", password=None)
        assert client.app.state.user_store.get_by_id(data["id"]).password_automatically_set

    def test_cannot_demote_self(self, api_client: ApiClient) -> None:
        client, token, uid = api_client
        resp = client.patch(f"/api/v1/auth/users/{uid}", json={"role": "user"}, headers=_auth(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_modification"

    def test_cannot_delete_self(self, api_client: ApiClient) -> None:
        client, token, uid = api_client
        resp = client.delete(f"/api/v1/auth/users/{uid}", headers=_auth(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_modification"

    def test_patch_nothing(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        user = _create_user(client, token, "unchanged")
        resp = client.patch(f"/api/v1/auth/users/{user['id']}", json={}, headers=_auth(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_changes"

    def test_delete_user_and_memberships(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        user = _create_user(client, token, "leaver")
        group = client.post("/api/v1/groups", json={"name": "Leavers", "path": "leavers"}, headers=_auth(token)).json()
        client.post(f"/api/v1/groups/{group['id']}/members", json={"user_id": user["id"]}, headers=_auth(token))

        resp = client.delete(f"/api/v1/auth/users/{user['id']}", headers=_auth(token))
        assert resp.status_code == 204
        assert client.app.state.user_store.get_by_id(user["id"]) is None
        members = client.get(f"/api/v1/groups/{group['id']}/members", headers=_auth(token)).json()
        assert members == []
        assert client.app.state.user_store.get_by_username("ghost") is None
        usernames = [u["username"] for u in client.get("/api/v1/auth/users", headers=_auth(token)).json()]
        assert "leaver" not in usernames

    def test_delete_missing_user(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        assert client.delete("/api/v1/auth/users/999999", headers=_auth(token)).status_code == 404

    def test_admin_disables_two_factor(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        user = _create_user(client, token, "lostphone")
        client.app.state.user_store.update_user(
            user["id"], otp_secret=generate_otp_secret(), otp_required_for_login=True
        )
        resp = client.post(f"/api/v1/auth/users/{user['id']}/disable_two_factor", headers=_auth(token))
        assert resp.status_code == 200
        assert resp.json()["two_factor_enabled"] is False


class TestApiApplicationSettings:
    def test_get_and_patch(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        assert client.get("/api/v1/application/settings", headers=_auth(token)).json()["signup_enabled"] is True
        resp = client.patch(
            "/api/v1/application/settings", json={"two_factor_grace_period": 12}, headers=_auth(token)
        )
        assert resp.status_code == 200
        assert resp.json()["two_factor_grace_period"] == 12

    def test_negative_grace_period_rejected(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        resp = client.patch(
            "/api/v1/application/settings", json={"two_factor_grace_period": -1}, headers=_auth(token)
        )
        assert resp.status_code == 422

    def test_publish_terms(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        resp = client.post("/api/v1/application/terms", json={"terms": "Rule one."}, headers=_auth(token))
        assert resp.status_code == 201
        current = client.get("/api/v1/application/terms", headers=_auth(token)).json()
        assert current["id"] == resp.json()["id"]
        assert current["terms"] == "Rule one."


class TestApiGroups:
    def test_create_nested_group(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        parent = client.post(
            "/api/v1/groups",
            json={"name": "Platform", "path": "platform", "require_two_factor_authentication": True},
            headers=_auth(token),
        ).json()
        resp = client.post(
            "/api/v1/groups",
            json={"name": "Storage", "path": "storage", "parent_id": parent["id"]},
            headers=_auth(token),
        )
        assert resp.status_code == 201
        assert resp.json()["full_name"] == "Platform / Storage"

    def test_unknown_parent(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        resp = client.post(
            "/api/v1/groups", json={"name": "Orphan", "path": "orphan", "parent_id": 999999}, headers=_auth(token)
        )
        assert resp.status_code == 400

    def test_duplicate_path(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        client.post("/api/v1/groups", json={"name": "Twice", "path": "twice"}, headers=_auth(token))
        resp = client.post("/api/v1/groups", json={"name": "Twice", "path": "twice"}, headers=_auth(token))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"
        paths = [g["path"] for g in client.get("/api/v1/groups", headers=_auth(token)).json()]
        assert paths.count("twice") == 1

    def test_user_groups_lists_direct_memberships(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        user = _create_user(client, token, "joiner")
        parent = client.post("/api/v1/groups", json={"name": "Data", "path": "data"}, headers=_auth(token)).json()
        child = client.post(
            "/api/v1/groups", json={"name": "Lake", "path": "lake", "parent_id": parent["id"]}, headers=_auth(token)
        ).json()
        assert client.get(f"/api/v1/users/{user['id']}/groups", headers=_auth(token)).json() == []

        client.post(f"/api/v1/groups/{child['id']}/members", json={"user_id": user["id"]}, headers=_auth(token))
        resp = client.get(f"/api/v1/users/{user['id']}/groups", headers=_auth(token))
        assert resp.status_code == 200
        assert [g["full_name"] for g in resp.json()] == ["Data / Lake"]

    def test_user_groups_unknown_user(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        assert client.get("/api/v1/users/999999/groups", headers=_auth(token)).status_code == 404

    def test_group_requirement_shows_in_required_actions(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        user = _create_user(client, token, "grouped")
        group = client.post(
            "/api/v1/groups",
            json={"name": "Secure", "path": "secure", "require_two_factor_authentication": True},
            headers=_auth(token),
        ).json()
        resp = client.post(
            f"/api/v1/groups/{group['id']}/members",
            json={"user_id": user["id"], "access_level": "maintainer"},
            headers=_auth(token),
        )
        assert resp.status_code == 201
        assert resp.json()["access_level"] == 40

        login = client.post("/api/v1/auth/login", json={"login": "grouped", "password": "password123"})
        assert login.json()["required_actions"] == ["two_factor"]
        client.cookies.clear()

        client.delete(f"/api/v1/groups/{group['id']}/members/{user['id']}", headers=_auth(token))
        login = client.post("/api/v1/auth/login", json={"login": "grouped", "password": "password123"})
        assert login.json()["required_actions"] == []

    def test_invalid_access_level(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        group = client.post("/api/v1/groups", json={"name": "Levels", "path": "levels"}, headers=_auth(token)).json()
        resp = client.post(
            f"/api/v1/groups/{group['id']}/members",
            json={"user_id": 1, "access_level": "emperor"},
            headers=_auth(token),
        )
        assert resp.status_code == 422

    def test_patch_group(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        group = client.post("/api/v1/groups", json={"name": "Old", "path": "renamed"}, headers=_auth(token)).json()
        resp = client.patch(
            f"/api/v1/groups/{group['id']}", json={"name": "New", "two_factor_grace_period": 0}, headers=_auth(token)
        )
        assert resp.status_code == 200
        assert resp.json()["name"] == "New"
        assert resp.json()["two_factor_grace_period"] == 0

    def test_missing_group(self, api_client: ApiClient) -> None:
        client, token, _uid = api_client
        assert client.get("/api/v1/groups/999999", headers=_auth(token)).status_code == 404
