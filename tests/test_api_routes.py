"""
tests/test_api_routes.py -- Integration tests for the /api/v1 auth and user routes.

Covers:
  - Login: 200 pair with Cache-Control: no-store; identical 401 body for an
    unknown email and a wrong password; 422 on malformed input
  - Refresh / logout over HTTP: rotation, 404 on reuse, 204 on logout
  - /auth/me: 401 invalid_token without a token, 401 token_expired (with a
    WWW-Authenticate challenge) for an expired one
  - Registration: 201, 409 duplicate, 422 invalid (including passwords over
    bcrypt's 72-byte limit)
  - Role elevation: 403 for standard users and stale admin claims, 200 for a
    live admin, 404 for an unknown user
  - Server faults: 500 storage_error / storage_timeout / signing_error, and
    429 rate_limited with Retry-After

All tests share one module-scoped client, so each test registers its own
email addresses.
"""

from __future__ import annotations

import time
from datetime import timedelta

from auth.errors import SigningError, StorageError
from auth.models import Role
from conftest import bearer, login, make_user


def _register(client, email: str, password: str = "pw123") -> dict:
    resp = client.post("/api/v1/users/register", json={"email": email, "password": password})
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


def test_login_returns_token_pair(api_client):
    client = api_client.client
    resp = client.post(
        "/api/v1/auth/login",
        json={"email": api_client.admin_email, "password": api_client.admin_password},
    )
    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    data = resp.json()
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == 900
    assert data["access_token"] and data["refresh_token"]


def test_bad_credentials_do_not_reveal_account_existence(api_client):
    client = api_client.client
    unknown = client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": "pw123"})
    wrong = client.post("/api/v1/auth/login", json={"email": api_client.admin_email, "password": "wrong"})
    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json() == wrong.json()
    assert unknown.json()["error"]["code"] == "bad_credentials"


def test_login_rejects_malformed_body(api_client):
    resp = api_client.client.post("/api/v1/auth/login", json={"email": "not-an-email", "password": "x"})
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


# ---------------------------------------------------------------------------
# Refresh and logout
# ---------------------------------------------------------------------------


def test_refresh_rotates_and_old_token_is_rejected(api_client):
    client = api_client.client
    _register(client, "rotate@example.com")
    pair = login(client, "rotate@example.com", "pw123")

    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    rotated = resp.json()
    assert rotated["refresh_token"] != pair["refresh_token"]

    reuse = client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
    assert reuse.status_code == 404
    assert reuse.json()["error"]["code"] == "token_not_found"


def test_logout_then_refresh_is_not_found(api_client):
    client = api_client.client
    _register(client, "logout@example.com")
    pair = login(client, "logout@example.com", "pw123")

    resp = client.post("/api/v1/auth/logout", json={"refresh_token": pair["refresh_token"]})
    assert resp.status_code == 204
    assert client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]}).status_code == 404
    assert client.post("/api/v1/auth/logout", json={"refresh_token": pair["refresh_token"]}).status_code == 404


def test_access_token_outlives_logout(api_client):
    client = api_client.client
    _register(client, "stillvalid@example.com")
    pair = login(client, "stillvalid@example.com", "pw123")
    client.post("/api/v1/auth/logout", json={"refresh_token": pair["refresh_token"]})
    assert client.get("/api/v1/auth/me", headers=bearer(pair["access_token"])).status_code == 200


# ---------------------------------------------------------------------------
# /auth/me
# ---------------------------------------------------------------------------


def test_me_returns_claims(api_client):
    client = api_client.client
    pair = login(client, api_client.admin_email, api_client.admin_password)
    resp = client.get("/api/v1/auth/me", headers=bearer(pair["access_token"]))
    assert resp.status_code == 200
    assert resp.json()["user_id"] == api_client.admin_id
    assert resp.json()["role"] == "admin"


def test_me_without_token_is_unauthorized(api_client):
    resp = api_client.client.get("/api/v1/auth/me")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_token"
    assert resp.headers["www-authenticate"].startswith("Bearer")


def test_me_with_garbage_token_is_unauthorized(api_client):
    resp = api_client.client.get("/api/v1/auth/me", headers=bearer("garbage"))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_token"


def test_expired_token_asks_client_to_refresh(api_client):
    client = api_client.client
    codec = client.app.state.codec
    token = codec.issue_access_token(api_client.admin_id, Role.admin, ttl=timedelta(seconds=-5))
    resp = client.get("/api/v1/auth/me", headers=bearer(token))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "token_expired"
    assert "expired" in resp.headers["www-authenticate"]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def test_register_creates_standard_user(api_client):
    data = _register(api_client.client, "fresh@example.com")
    assert data["email"] == "fresh@example.com"
    assert data["role"] == "standard"
    assert "password" not in data and "password_hash" not in data


def test_register_duplicate_email_conflicts(api_client):
    client = api_client.client
    _register(client, "twice@example.com")
    resp = client.post("/api/v1/users/register", json={"email": "twice@example.com", "password": "pw456"})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "email_taken"


def test_register_rejects_short_password(api_client):
    resp = api_client.client.post("/api/v1/users/register", json={"email": "short@example.com", "password": "pw"})
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Role elevation
# ---------------------------------------------------------------------------


def test_standard_user_cannot_elevate(api_client):
    client = api_client.client
    user = _register(client, "a@x.com")
    pair = login(client, "a@x.com", "pw123")
    me = client.get("/api/v1/auth/me", headers=bearer(pair["access_token"])).json()
    assert me["role"] == "standard"

    resp = client.patch(f"/api/v1/users/{user['id']}/role", headers=bearer(pair["access_token"]))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"
    assert not api_client.store.is_admin(user["id"])


def test_admin_elevates_user(api_client):
    client = api_client.client
    user = _register(client, "promote@example.com")
    admin = login(client, api_client.admin_email, api_client.admin_password)

    resp = client.patch(f"/api/v1/users/{user['id']}/role", headers=bearer(admin["access_token"]))
    assert resp.status_code == 200
    assert resp.json()["role"] == "admin"

    # A fresh login now carries the admin role.
    pair = login(client, "promote@example.com", "pw123")
    me = client.get("/api/v1/auth/me", headers=bearer(pair["access_token"])).json()
    assert me["role"] == "admin"


def test_stale_admin_claim_is_rejected(api_client):
    client = api_client.client
    uid = make_user(api_client.store, "stale@example.com", "pw123")
    target = _register(client, "target@example.com")
    forged = client.app.state.codec.issue_access_token(uid, Role.admin)

    resp = client.patch(f"/api/v1/users/{target['id']}/role", headers=bearer(forged))
    assert resp.status_code == 403


def test_elevate_unknown_user_is_not_found(api_client):
    client = api_client.client
    admin = login(client, api_client.admin_email, api_client.admin_password)
    resp = client.patch("/api/v1/users/999999/role", headers=bearer(admin["access_token"]))
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "user_not_found"


def test_elevate_requires_token(api_client):
    resp = api_client.client.patch(f"/api/v1/users/{api_client.admin_id}/role")
    assert resp.status_code == 401


def test_register_accepts_multibyte_password_within_limit(api_client):
    client = api_client.client
    _register(client, "accent@example.com", password="é" * 30)
    login(client, "accent@example.com", "é" * 30)


def test_register_rejects_multibyte_password_over_byte_limit(api_client):
    resp = api_client.client.post(
        "/api/v1/users/register", json={"email": "uni@example.com", "password": "é" * 40}
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"
    assert api_client.store.get_user_by_email("uni@example.com") is None


# ---------------------------------------------------------------------------
# Server-side failures and throttling
# ---------------------------------------------------------------------------


def test_storage_failure_is_500_without_tokens(api_client, monkeypatch):
    client = api_client.client

    def broken_put(record):
        raise StorageError("disk full")

    monkeypatch.setattr(client.app.state.store, "put_refresh_token", broken_put)
    resp = client.post(
        "/api/v1/auth/login",
        json={"email": api_client.admin_email, "password": api_client.admin_password},
    )
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "storage_error"
    assert resp.headers["cache-control"] == "no-store"
    assert "access_token" not in resp.text


def test_slow_store_call_is_500_storage_timeout(api_client, monkeypatch):
    client = api_client.client

    def slow_refresh(refresh_token):
        time.sleep(0.5)

    monkeypatch.setattr(client.app.state.settings, "store_timeout_seconds", 0.05)
    monkeypatch.setattr(client.app.state.refresh, "refresh", slow_refresh)
    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "whatever"})
    assert resp.status_code == 500
    body = resp.json()["error"]
    assert body["code"] == "storage_timeout"
    assert "outcome is unknown" in body["message"]


def test_signing_failure_is_500_signing_error(api_client, monkeypatch):
    client = api_client.client

    def broken_issue(user_id, role, ttl=None):
        raise SigningError("Could not sign access token.")

    monkeypatch.setattr(client.app.state.codec, "issue_access_token", broken_issue)
    resp = client.post(
        "/api/v1/auth/login",
        json={"email": api_client.admin_email, "password": api_client.admin_password},
    )
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "signing_error"
    # The process keeps serving.
    assert client.get("/api/v1/health").status_code == 200


def test_credential_routes_are_rate_limited(api_client, monkeypatch):
    client = api_client.client
    monkeypatch.setattr(client.app.state.settings, "login_rate_limit", "2/minute")

    statuses = [
        client.post("/api/v1/auth/refresh", json={"refresh_token": "never-issued"}).status_code
        for _ in range(3)
    ]
    assert statuses == [404, 404, 429]

    resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "never-issued"})
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "rate_limited"
    assert int(resp.headers["retry-after"]) > 0
