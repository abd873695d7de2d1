"""End-to-end tests for the admin authentication API.

Covers the complete flow over HTTP:
- Login (success, failure, lockout, rate limit)
- Logout of live and already-expired tokens
- Token refresh
- Profile
- Login-log queries and account administration
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from heimdall import app as app_module
from heimdall.service.tokens import revocation_key

PASSWORD = "Tidal-Lantern-42"


@pytest.fixture
def client(runtime):
    """Test client bound to the frozen-clock runtime."""
    return TestClient(app_module.app)


@pytest.fixture
def alice(make_user):
    return make_user("alice", role="admin")


def _login(client, username="alice", password=PASSWORD, ip=None):
    headers = {"X-Forwarded-For": ip} if ip else {}
    return client.post(
        "/admin/login", json={"username": username, "password": password}, headers=headers
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestLoginFlow:
    def test_login_returns_tokens_and_summary(self, client, alice):
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["code"] == 200
        assert body["message"] == "登录成功"
        assert body["timestamp"] == "2024-05-01T08:00:00Z"
        data = body["data"]
        assert data["token"] and data["refreshToken"]
        assert data["expiresIn"] == 7200
        assert data["tokenType"] == "Bearer"
        assert data["user"]["username"] == "alice"
        assert data["user"]["id"] == alice.id
        assert "passwordHash" not in data["user"]
        assert "password_hash" not in data["user"]

    def test_remember_me_is_accepted(self, client, alice):
        response = client.post(
            "/admin/login",
            json={"username": "alice", "password": PASSWORD, "rememberMe": True},
        )
        assert response.status_code == 200

    def test_missing_password_is_validation_error(self, client, alice):
        response = client.post("/admin/login", json={"username": "alice"})
        assert response.status_code == 400
        assert response.json()["code"] == "validation_failed"

    def test_username_disclosure_resistance(self, client, alice):
        ghost = _login(client, "ghost", "anything")
        wrong = _login(client, "alice", "wrong-password")

        assert ghost.status_code == wrong.status_code == 401
        assert ghost.json()["code"] == wrong.json()["code"] == "login_failed"
        assert ghost.json()["msg"] == wrong.json()["msg"]

    def test_fifth_failure_locks_account(self, client, alice, runtime, clock):
        for _ in range(4):
            assert _login(client, password="wrong-password").status_code == 401

        response = _login(client, password="wrong-password")

        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "account_locked"
        assert "30" in body["msg"]
        assert runtime.store.get_user(alice.id).locked_until is not None

        # Correct password from another address is still refused while locked.
        blocked = _login(client, ip="203.0.113.9")
        assert blocked.status_code == 403
        assert blocked.json()["code"] == "account_locked"

    def test_disabled_account(self, client, make_user):
        make_user("carol", status="inactive")
        response = _login(client, "carol")
        assert response.status_code == 403
        assert response.json() == {"code": "account_disabled", "msg": "账户已被禁用"}

    def test_rate_limit_per_ip(self, client, alice, runtime):
        runtime.settings.login_rate_limit_per_minute = 2
        assert _login(client, ip="198.51.100.1").status_code == 200
        assert _login(client, ip="198.51.100.1").status_code == 200
        limited = _login(client, ip="198.51.100.1")
        assert limited.status_code == 429
        assert limited.json()["code"] == "rate_limit_exceeded"
        assert _login(client, ip="198.51.100.2").status_code == 200

    def test_forwarded_address_recorded(self, client, alice, runtime):
        _login(client, ip="203.0.113.7, 10.0.0.1")
        assert runtime.store.get_user(alice.id).last_login_ip == "203.0.113.7"


class TestLogoutFlow:
    def test_logout_revokes_token(self, client, alice, runtime, clock):
        data = _login(client).json()["data"]
        clock.advance(seconds=6000)

        response = client.post("/admin/logout", headers=_bearer(data["token"]))

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "登出成功"
        assert "data" not in body
        profile = client.get("/admin/profile", headers=_bearer(data["token"]))
        assert profile.status_code == 401
        assert profile.json()["code"] == "invalid_token"

    def test_logout_revocation_ttl(self, client, alice, runtime, clock):
        data = _login(client).json()["data"]
        jti = runtime.tokens.introspect(data["token"]).jti
        clock.advance(seconds=6000)
        client.post("/admin/logout", headers=_bearer(data["token"]))
        assert asyncio.run(runtime.cache.ttl(revocation_key(jti))) == 1200

    def test_logout_of_expired_token(self, client, alice, runtime, clock):
        data = _login(client).json()["data"]
        jti = runtime.tokens.introspect(data["token"]).jti
        clock.advance(hours=3)

        response = client.post("/admin/logout", headers=_bearer(data["token"]))

        assert response.status_code == 200
        assert not asyncio.run(runtime.cache.exists(revocation_key(jti)))

    def test_logout_with_refresh_token(self, client, alice):
        data = _login(client).json()["data"]
        response = client.post(
            "/admin/logout",
            json={"refreshToken": data["refreshToken"]},
            headers=_bearer(data["token"]),
        )
        assert response.status_code == 200
        refreshed = client.post("/admin/refresh", json={"refreshToken": data["refreshToken"]})
        assert refreshed.status_code == 401

    def test_logout_requires_bearer(self, client):
        response = client.post("/admin/logout")
        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"

    def test_logout_rejects_forged_token(self, client, alice):
        token = _login(client).json()["data"]["token"]
        response = client.post("/admin/logout", headers=_bearer(token + "x"))
        assert response.status_code == 401
        assert response.json()["code"] == "invalid_token"


class TestRefreshFlow:
    def test_refresh_issues_new_pair(self, client, alice, clock):
        data = _login(client).json()["data"]
        clock.advance(seconds=1)

        response = client.post("/admin/refresh", json={"refreshToken": data["refreshToken"]})

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "刷新成功"
        new = body["data"]
        assert new["token"] != data["token"]
        assert new["refreshToken"] != data["refreshToken"]
        assert new["expiresIn"] == 7200
        assert client.get("/admin/profile", headers=_bearer(new["token"])).status_code == 200
        assert client.get("/admin/profile", headers=_bearer(data["token"])).status_code == 200

    def test_refresh_with_access_token_rejected(self, client, alice):
        data = _login(client).json()["data"]
        response = client.post("/admin/refresh", json={"refreshToken": data["token"]})
        assert response.status_code == 401
        assert response.json()["code"] == "invalid_token"

    def test_refresh_without_token(self, client):
        response = client.post("/admin/refresh", json={})
        assert response.status_code == 400


class TestProfile:
    def test_profile(self, client, alice):
        token = _login(client).json()["data"]["token"]
        response = client.get("/admin/profile", headers=_bearer(token))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["username"] == "alice"
        assert data["lastLoginIp"] == "testclient"
        assert data["lastLoginAt"] == "2024-05-01T08:00:00Z"

    def test_non_ascii_signature_is_invalid_token(self, client, alice):
        token = _login(client).json()["data"]["token"]
        header, payload, _ = token.split(".")
        forged = f"Bearer {header}.{payload}.\u00e9\u00e9\u00e9".encode("utf-8")
        response = client.get("/admin/profile", headers={"Authorization": forged})
        assert response.status_code == 401
        assert response.json()["code"] == "invalid_token"

    def test_expired_token(self, client, alice, clock):
        token = _login(client).json()["data"]["token"]
        clock.advance(hours=2)
        response = client.get("/admin/profile", headers=_bearer(token))
        assert response.status_code == 401
        assert response.json()["code"] == "token_expired"

    def test_profile_after_disable(self, client, alice, runtime):
        token = _login(client).json()["data"]["token"]
        runtime.store.set_user_status(alice.id, "inactive")
        response = client.get("/admin/profile", headers=_bearer(token))
        assert response.status_code == 403
        assert response.json()["code"] == "account_disabled"


class TestLoginLogs:
    def test_admin_lists_logs(self, client, alice):
        _login(client, "ghost", "anything")
        token = _login(client).json()["data"]["token"]

        response = client.get("/admin/login-logs", headers=_bearer(token))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pagination"]["total"] == 2
        assert data["pagination"]["hasNext"] is False
        statuses = {item["username"]: item["status"] for item in data["items"]}
        assert statuses == {"ghost": "failed", "alice": "success"}
        failed = next(item for item in data["items"] if item["status"] == "failed")
        assert failed["failReason"] == "用户不存在"

    def test_filter_by_status(self, client, alice):
        _login(client, "ghost", "anything")
        token = _login(client).json()["data"]["token"]
        response = client.get(
            "/admin/login-logs", params={"status": "failed"}, headers=_bearer(token)
        )
        assert [item["username"] for item in response.json()["data"]["items"]] == ["ghost"]

    def test_bad_time_rejected(self, client, alice):
        token = _login(client).json()["data"]["token"]
        response = client.get(
            "/admin/login-logs", params={"startTime": "yesterday"}, headers=_bearer(token)
        )
        assert response.status_code == 400
        assert response.json()["code"] == "validation_failed"

    def test_limit_out_of_range(self, client, alice):
        token = _login(client).json()["data"]["token"]
        response = client.get("/admin/login-logs", params={"limit": 101}, headers=_bearer(token))
        assert response.status_code == 400

    def test_non_admin_forbidden(self, client, make_user):
        make_user("ed", role="editor")
        token = _login(client, "ed").json()["data"]["token"]
        response = client.get("/admin/login-logs", headers=_bearer(token))
        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"


class TestAccountAdministration:
    def test_disable_then_enable(self, client, alice, make_user):
        target = make_user("eve", role="author")
        token = _login(client).json()["data"]["token"]

        disabled = client.post(f"/admin/users/{target.id}/disable", headers=_bearer(token))
        assert disabled.status_code == 200
        assert disabled.json()["data"]["status"] == "inactive"
        assert _login(client, "eve").json()["code"] == "account_disabled"

        enabled = client.post(f"/admin/users/{target.id}/enable", headers=_bearer(token))
        assert enabled.json()["data"]["status"] == "active"
        assert _login(client, "eve").status_code == 200

    def test_unlock(self, client, alice, make_user, runtime):
        target = make_user("eve", role="author")
        for _ in range(5):
            _login(client, "eve", "wrong-password", ip="203.0.113.5")
        assert runtime.store.get_user(target.id).locked_until is not None

        token = _login(client).json()["data"]["token"]
        response = client.post(f"/admin/users/{target.id}/unlock", headers=_bearer(token))

        assert response.status_code == 200
        assert runtime.store.get_user(target.id).locked_until is None
        assert _login(client, "eve", ip="198.51.100.8").status_code == 200

    def test_login_from_same_address_after_unlock(self, client, alice, make_user):
        target = make_user("eve", role="author")
        for _ in range(5):
            _login(client, "eve", "wrong-password", ip="203.0.113.5")
        assert _login(client, "eve", ip="203.0.113.5").status_code == 403

        token = _login(client).json()["data"]["token"]
        client.post(f"/admin/users/{target.id}/unlock", headers=_bearer(token))

        assert _login(client, "eve", ip="203.0.113.5").status_code == 200

    def test_unlock_keeps_disabled_account_disabled(self, client, alice, make_user):
        target = make_user("eve", role="author", status="inactive")
        token = _login(client).json()["data"]["token"]
        response = client.post(f"/admin/users/{target.id}/unlock", headers=_bearer(token))
        assert response.json()["data"]["status"] == "inactive"
        assert _login(client, "eve").json()["code"] == "account_disabled"

    def test_unknown_user(self, client, alice):
        token = _login(client).json()["data"]["token"]
        response = client.post("/admin/users/missing/unlock", headers=_bearer(token))
        assert response.status_code == 404
        assert response.json()["code"] == "resource_not_found"


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["store"]["type"] == "MemoryStore"
    assert body["checks"]["cache"]["type"] == "MemoryCache"


class TestUserDirectory:
    def test_list_users(self, client, alice, make_user, clock):
        clock.advance(minutes=1)
        make_user("eve", role="author")
        clock.advance(minutes=1)
        make_user("mallory", role="author", status="inactive")
        token = _login(client).json()["data"]["token"]

        response = client.get(
            "/admin/users", params={"role": "author", "limit": 1}, headers=_bearer(token)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "获取用户列表成功"
        data = body["data"]
        assert [item["username"] for item in data["items"]] == ["mallory"]
        assert data["pagination"] == {
            "page": 1,
            "limit": 1,
            "total": 2,
            "totalPages": 2,
            "hasNext": True,
            "hasPrev": False,
        }
        assert "passwordHash" not in data["items"][0]

    def test_list_users_sorted_by_username(self, client, alice, make_user):
        make_user("zed", role="editor")
        token = _login(client).json()["data"]["token"]
        response = client.get(
            "/admin/users",
            params={"sortBy": "username", "sortDesc": "true"},
            headers=_bearer(token),
        )
        assert [item["username"] for item in response.json()["data"]["items"]] == ["zed", "alice"]

    def test_list_users_rejects_unknown_status(self, client, alice):
        token = _login(client).json()["data"]["token"]
        response = client.get("/admin/users", params={"status": "banned"}, headers=_bearer(token))
        assert response.status_code == 400
        assert response.json()["code"] == "validation_failed"

    def test_list_users_requires_admin(self, client, make_user):
        make_user("ed", role="editor")
        token = _login(client, "ed").json()["data"]["token"]
        response = client.get("/admin/users", headers=_bearer(token))
        assert response.status_code == 403

    def test_user_detail(self, client, alice, make_user):
        target = make_user("eve", role="author")
        token = _login(client).json()["data"]["token"]
        response = client.get(f"/admin/users/{target.id}", headers=_bearer(token))
        assert response.status_code == 200
        assert response.json()["message"] == "获取用户详情成功"
        assert response.json()["data"]["username"] == "eve"

    def test_author_sees_only_self(self, client, alice, make_user):
        writer = make_user("eve", role="author")
        token = _login(client, "eve").json()["data"]["token"]
        assert client.get(f"/admin/users/{writer.id}", headers=_bearer(token)).status_code == 200
        other = client.get(f"/admin/users/{alice.id}", headers=_bearer(token))
        assert other.status_code == 403
        assert other.json()["code"] == "forbidden"
