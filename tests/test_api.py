"""HTTP surface tests: envelopes, status codes and headers."""

import pytest
from fastapi.testclient import TestClient

from sessionguard.app import create_app
from sessionguard.config import Settings
from sessionguard.service.runtime import Runtime
from sessionguard.storage.credentials import MemoryCredentialStore
from sessionguard.storage.memory import MemoryStore

PASSWORD = "correct horse battery staple"


def _runtime(**overrides) -> Runtime:
    values = dict(
        test_mode=True,
        jwt_secret="test-secret-key-for-testing-only-do-not-use-in-production",
        store_strategy="memory",
        max_login_attempts=3,
        login_delay_enabled=False,
    )
    values.update(overrides)
    credentials = MemoryCredentialStore()
    credentials.add_user("user@example.com", PASSWORD, user_id="user-1")
    credentials.add_user("other@example.com", PASSWORD, user_id="user-2")
    credentials.add_user("admin@example.com", PASSWORD, user_id="admin-1", role="admin")
    return Runtime.build(Settings(**values), store=MemoryStore(), credentials=credentials)


@pytest.fixture
def runtime():
    return _runtime()


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime=runtime))


def _login(client, identifier="user@example.com", **extra):
    resp = client.post("/v1/auth/login", json={"identifier": identifier, "password": PASSWORD, **extra})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestLogin:
    def test_login_returns_envelope(self, client):
        resp = client.post(
            "/v1/auth/login",
            json={"identifier": "user@example.com", "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["data"]["user_id"] == "user-1"
        assert body["data"]["token_type"] == "Bearer"
        assert body["data"]["remember_token"] is None
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_invalid_credentials_are_generic_and_bilingual(self, client):
        unknown = client.post("/v1/auth/login", json={"identifier": "ghost@example.com", "password": "x"})
        wrong = client.post("/v1/auth/login", json={"identifier": "user@example.com", "password": "x"})

        assert unknown.status_code == wrong.status_code == 401
        for resp in (unknown, wrong):
            error = resp.json()["error"]
            assert error["code"] == "invalid_credentials"
            assert error["message"] == "Invalid email/phone or password"
            assert error["message_bn"]
        assert unknown.json()["error"]["details"] == wrong.json()["error"]["details"]

    def test_lockout_carries_retry_after(self, client):
        for _ in range(3):
            client.post("/v1/auth/login", json={"identifier": "user@example.com", "password": "x"})

        resp = client.post("/v1/auth/login", json={"identifier": "user@example.com", "password": PASSWORD})
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) > 0
        error = resp.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"]["retry_after"] == int(resp.headers["Retry-After"])
        assert error["details"]["reason"] == "locked"

    def test_unverified_account_gets_403(self, runtime, client):
        runtime.credentials.add_user("new@example.com", PASSWORD, email_verified=False)
        resp = client.post("/v1/auth/login", json={"identifier": "new@example.com", "password": PASSWORD})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "verification_required"

    def test_validation_error_envelope(self, client):
        resp = client.post("/v1/auth/login", json={"identifier": "   ", "password": ""})
        assert resp.status_code == 422
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"]["errors"]


class TestAuthenticatedRoutes:
    def test_me(self, client):
        login = _login(client)
        resp = client.get("/v1/auth/me", headers=_auth(login["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["session_id"] == login["session_id"]

    def test_missing_or_bad_token(self, client):
        resp = client.get("/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

        resp = client.get("/v1/auth/me", headers=_auth("not.a.token"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

    def test_logout_revokes_session(self, client):
        login = _login(client)
        resp = client.post("/v1/auth/logout", json={}, headers=_auth(login["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["revoked"] == 1

        resp = client.get("/v1/auth/me", headers=_auth(login["access_token"]))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_revoked"
        assert resp.json()["error"]["details"]["reason"] == "revoked"

    def test_list_and_revoke_other_sessions(self, client):
        first = _login(client)
        second = _login(client)

        resp = client.get("/v1/auth/sessions", headers=_auth(first["access_token"]))
        items = resp.json()["data"]["items"]
        assert len(items) == 2
        assert [i["current"] for i in items if i["id"] == first["session_id"]] == [True]

        resp = client.delete("/v1/auth/sessions", headers=_auth(first["access_token"]))
        assert resp.json()["data"]["revoked"] == 1
        assert client.get("/v1/auth/me", headers=_auth(first["access_token"])).status_code == 200
        assert client.get("/v1/auth/me", headers=_auth(second["access_token"])).status_code == 401

    def test_revoke_single_session_requires_ownership(self, client):
        mine = _login(client)
        spare = _login(client)
        theirs = _login(client, identifier="other@example.com")

        resp = client.delete(
            f"/v1/auth/sessions/{theirs['session_id']}", headers=_auth(mine["access_token"])
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

        resp = client.delete(
            f"/v1/auth/sessions/{spare['session_id']}", headers=_auth(mine["access_token"])
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["revoked"] == 1

    def test_remember_refresh(self, client):
        login = _login(client, remember_me=True)
        assert login["remember_token"]

        resp = client.post("/v1/auth/refresh", json={"remember_token": login["remember_token"]})
        assert resp.status_code == 200
        assert resp.json()["data"]["session_id"] != login["session_id"]

        replay = client.post("/v1/auth/refresh", json={"remember_token": login["remember_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "remember_token_invalid"

    def test_refresh_current_session(self, client):
        login = _login(client)
        resp = client.post("/v1/auth/sessions/refresh", headers=_auth(login["access_token"]))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["session_id"] == login["session_id"]
        assert data["remember_token"] is None
        assert client.get("/v1/auth/me", headers=_auth(data["access_token"])).status_code == 200

    def test_refresh_after_logout_is_rejected(self, client):
        login = _login(client)
        client.post("/v1/auth/logout", json={}, headers=_auth(login["access_token"]))
        resp = client.post("/v1/auth/sessions/refresh", headers=_auth(login["access_token"]))
        assert resp.status_code == 401

    def test_disable_remember_me(self, client):
        first = _login(client, remember_me=True)
        second = _login(client, remember_me=True)
        theirs = _login(client, identifier="other@example.com", remember_me=True)

        resp = client.request(
            "DELETE",
            "/v1/auth/remember",
            json={"remember_token": theirs["remember_token"]},
            headers=_auth(first["access_token"]),
        )
        assert resp.json()["data"]["revoked"] == 0

        resp = client.delete("/v1/auth/remember", headers=_auth(first["access_token"]))
        assert resp.json()["data"]["revoked"] == 2
        for login in (first, second):
            replay = client.post("/v1/auth/refresh", json={"remember_token": login["remember_token"]})
            assert replay.status_code == 401
        resp = client.post("/v1/auth/refresh", json={"remember_token": theirs["remember_token"]})
        assert resp.status_code == 200

    def test_logout_cannot_burn_another_users_remember_token(self, client):
        mine = _login(client)
        theirs = _login(client, identifier="other@example.com", remember_me=True)
        resp = client.post(
            "/v1/auth/logout",
            json={"remember_token": theirs["remember_token"]},
            headers=_auth(mine["access_token"]),
        )
        assert resp.status_code == 200
        resp = client.post("/v1/auth/refresh", json={"remember_token": theirs["remember_token"]})
        assert resp.status_code == 200


class TestAdmin:
    def test_stats_require_admin(self, client):
        login = _login(client)
        resp = client.get("/v1/admin/sessions/stats", headers=_auth(login["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_stats_report_sessions_and_login_counters(self, client):
        _login(client)
        client.post("/v1/auth/login", json={"identifier": "user@example.com", "password": "x"})
        admin = _login(client, identifier="admin@example.com")

        resp = client.get(
            "/v1/admin/sessions/stats",
            params={"user_id": "user-1", "identifier": "user@example.com"},
            headers=_auth(admin["access_token"]),
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user_id"] == "user-1"
        assert data["sessions"]["active"] == 1
        assert data["login"]["identifier_attempts"] == 1
        assert data["login"]["delay_level"] == 0

    def test_cleanup(self, client):
        admin = _login(client, identifier="admin@example.com")
        resp = client.post("/v1/admin/sessions/cleanup", headers=_auth(admin["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"] == {"sessions_purged": 0, "fallback_counters_purged": 0}


class TestOperational:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["store"] == "memory"
        assert resp.json()["login_guard_degraded"] is False

    def test_unknown_route_uses_envelope(self, client):
        resp = client.get("/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_unexpected_error_is_generic(self, runtime):
        async def explode(*args, **kwargs):
            raise RuntimeError("database password is hunter2")

        runtime.gateway.login = explode
        client = TestClient(create_app(runtime=runtime), raise_server_exceptions=False)
        resp = client.post("/v1/auth/login", json={"identifier": "user@example.com", "password": PASSWORD})
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "server_error"
        assert "hunter2" not in resp.text
