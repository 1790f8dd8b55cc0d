"""End-to-end tests of the HTTP surface through the FastAPI test client."""

import pytest
from fastapi.testclient import TestClient

from sessionvault.app import app
from sessionvault.service.runtime import get_runtime
from sessionvault.storage.errors import StoreUnavailableError

PASSWORD = "integration-password-123"


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def user():
    return get_runtime().directory.create_user("bob@example.com", PASSWORD)


@pytest.fixture
def admin():
    return get_runtime().directory.create_user("root@example.com", PASSWORD, role="admin")


def _login(client, email="bob@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestLoginEndpoint:
    def test_login_success(self, client, user):
        resp = _login(client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["data"]["user_id"] == user.id
        assert body["data"]["access_token"]
        assert body["data"]["refresh_token"]
        assert body["data"]["token_type"] == "bearer"
        assert resp.headers["Cache-Control"].startswith("no-store")
        assert resp.headers["X-Request-ID"]

    def test_wrong_password(self, client, user):
        resp = _login(client, password="nope")
        assert resp.status_code == 401
        error = resp.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["details"] == {"attempts_remaining": 4}

    def test_lockout_after_repeated_failures(self, client, user):
        for _ in range(4):
            assert _login(client, password="nope").status_code == 401
        locked = _login(client, password="nope")
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "account_locked"
        assert locked.json()["error"]["details"]["lock_until"]

        assert _login(client).status_code == 423

    def test_invalid_payload(self, client):
        resp = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_request_id_is_echoed(self, client, user):
        resp = client.post(
            "/v1/auth/login",
            json={"email": "bob@example.com", "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )
        assert resp.headers["X-Request-ID"] == "req-123"


class TestRateLimiting:
    def test_login_is_rate_limited_per_ip(self, client, user, monkeypatch):
        monkeypatch.setattr(get_runtime().rate_limiter, "limit", 2)

        first = _login(client)
        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert _login(client, password="nope").status_code == 401

        blocked = _login(client)
        assert blocked.status_code == 429
        error = blocked.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"]["retry_after"] > 0
        assert blocked.headers["Retry-After"] == str(error["details"]["retry_after"])

    def test_refresh_shares_the_login_counter(self, client, user, monkeypatch):
        monkeypatch.setattr(get_runtime().rate_limiter, "limit", 1)
        login = _login(client).json()["data"]

        resp = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": login["refresh_token"]},
            headers=_auth(login["access_token"]),
        )
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"


class TestRefreshEndpoint:
    def test_refresh_rotates(self, client, user):
        login = _login(client).json()["data"]
        resp = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": login["refresh_token"]},
            headers=_auth(login["access_token"]),
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["refresh_token"] != login["refresh_token"]

        replay = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": login["refresh_token"]},
            headers=_auth(login["access_token"]),
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "unauthorized"

    def test_refresh_requires_access_token(self, client, user):
        login = _login(client).json()["data"]
        resp = client.post("/v1/auth/refresh", json={"refresh_token": login["refresh_token"]})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "access_token_required"

    def test_refresh_rejects_forged_access_token(self, client, user):
        login = _login(client).json()["data"]
        resp = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": login["refresh_token"]},
            headers=_auth("forged.token.value"),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_access_token"

    def test_store_outage_is_503(self, client, user, monkeypatch):
        login = _login(client).json()["data"]

        async def unavailable(user_id, token):
            raise StoreUnavailableError("connection refused", operation="get")

        monkeypatch.setattr(get_runtime().tokens, "validate_refresh_token", unavailable)
        resp = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": login["refresh_token"]},
            headers=_auth(login["access_token"]),
        )
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "service_unavailable"


class TestLogoutEndpoints:
    def test_logout_blacklists_access_token(self, client, user):
        login = _login(client).json()["data"]
        resp = client.post(
            "/v1/auth/logout",
            json={"refresh_token": login["refresh_token"]},
            headers=_auth(login["access_token"]),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["blacklisted"] is True
        assert resp.json()["data"]["refresh_revoked"] is True

        after = client.get("/v1/auth/sessions", headers=_auth(login["access_token"]))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "unauthorized"

    def test_logout_without_body(self, client, user):
        login = _login(client).json()["data"]
        resp = client.post("/v1/auth/logout", headers=_auth(login["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["refresh_revoked"] is False

    def test_logout_requires_token(self, client):
        resp = client.post("/v1/auth/logout")
        assert resp.status_code == 401

    def test_logout_all_revokes_every_session(self, client, user):
        first = _login(client).json()["data"]
        second = _login(client).json()["data"]

        resp = client.post("/v1/auth/logout-all", headers=_auth(second["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["sessions_revoked"] is True

        sessions = client.get("/v1/auth/sessions", headers=_auth(first["access_token"]))
        assert sessions.json()["data"]["items"] == []


class TestSessionEndpoints:
    def test_list_sessions(self, client, user):
        _login(client)
        login = _login(client).json()["data"]

        resp = client.get("/v1/auth/sessions", headers=_auth(login["access_token"]))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["tracking_available"] is True
        assert len(data["items"]) == 2
        item = data["items"][0]
        assert item["device_info"] == "testclient"
        assert "token_hash" not in item

    def test_verify_own_refresh_token(self, client, user):
        login = _login(client).json()["data"]
        resp = client.post(
            "/v1/auth/sessions/verify",
            json={"refresh_token": login["refresh_token"]},
            headers=_auth(login["access_token"]),
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["exists"] is True
        assert data["indexed"] is True
        assert isinstance(data["ttl"], int)


class TestAdminDiagnostics:
    def test_admin_report(self, client, admin, user):
        _login(client)
        token = _login(client, email="root@example.com").json()["data"]["access_token"]

        resp = client.get("/v1/admin/diagnostics/token-storage", headers=_auth(token))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["store_available"] is True
        assert data["key_counts"]["rt:"] == 2
        assert data["ttl_issues"] == []

    def test_non_admin_forbidden(self, client, user):
        token = _login(client).json()["data"]["access_token"]
        resp = client.get("/v1/admin/diagnostics/token-storage", headers=_auth(token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"


class TestHealth:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["store"] == "MemoryKeyValueStore"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    def test_unknown_route_uses_envelope(self, client):
        resp = client.get("/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"
