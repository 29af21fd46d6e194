"""Integration tests for the HTTP authentication flow.

Covers, per role path:
- Registration and login
- Refresh rotation and replay detection
- Lockout after repeated failures
- Password reset and email verification
- Session listing, logout and logout-all
- Administrator lookup and erasure
"""

import pytest
from fastapi.testclient import TestClient

from authledger import app as app_module
from authledger.config import Role
from authledger.service.runtime import get_runtime
from helpers import RecordingNotifier

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def notifier():
    recorder = RecordingNotifier()
    get_runtime().auth.notifier = recorder
    return recorder


def _register(client, email="alice@example.com", role="member", **extra):
    response = client.post(
        f"/v1/auth/{role}/register", json={"email": email, "password": PASSWORD, **extra}
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _login(client, email="alice@example.com", role="member", password=PASSWORD):
    return client.post(f"/v1/auth/{role}/login", json={"email": email, "password": password})


def _bearer(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestRegistration:
    def test_register_returns_principal_and_tokens(self, client, notifier):
        data = _register(client, profile={"display_name": "Alice"}, device="laptop")

        assert data["principal"]["email"] == "alice@example.com"
        assert data["principal"]["role"] == "member"
        assert data["principal"]["profile"] == {"display_name": "Alice"}
        assert "password_hash" not in data["principal"]
        assert data["tokens"]["token_type"] == "bearer"
        assert [purpose for _, purpose, _ in notifier.sent] == ["verify"]

    def test_duplicate_email_conflicts(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/member/register", json={"email": "ALICE@example.com", "password": PASSWORD}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_same_email_in_other_role_allowed(self, client):
        _register(client)
        _register(client, role="seller")

    def test_unknown_profile_field_rejected(self, client):
        response = client.post(
            "/v1/auth/member/register",
            json={"email": "alice@example.com", "password": PASSWORD, "profile": {"ssn": "1"}},
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"fields": ["ssn"]}

    def test_unknown_role_is_not_found(self, client):
        response = client.post(
            "/v1/auth/wizard/register", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestLoginAndRefresh:
    def test_login_and_me(self, client):
        _register(client)
        response = _login(client)
        assert response.status_code == 200
        tokens = response.json()["data"]["tokens"]

        me = client.get("/v1/auth/member/me", headers=_bearer(tokens))
        assert me.status_code == 200
        assert me.json()["data"]["email"] == "alice@example.com"
        assert me.headers["Cache-Control"] == "no-store"

    def test_wrong_password_and_unknown_email_look_alike(self, client):
        _register(client)
        wrong = _login(client, password="WrongPassword123!")
        unknown = _login(client, email="nobody@example.com")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_access_token_bound_to_role_path(self, client):
        tokens = _register(client)["tokens"]
        response = client.get("/v1/auth/seller/me", headers=_bearer(tokens))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_missing_bearer_token(self, client):
        response = client.get("/v1/auth/member/me")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_refresh_rotates_and_detects_replay(self, client):
        first = _register(client)["tokens"]

        rotated = client.post(
            "/v1/auth/member/refresh", json={"refresh_token": first["refresh_token"]}
        )
        assert rotated.status_code == 200
        second = rotated.json()["data"]["tokens"]
        assert second["session_id"] != first["session_id"]

        replay = client.post(
            "/v1/auth/member/refresh", json={"refresh_token": first["refresh_token"]}
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_reused"

        # The access token of the consumed session no longer authenticates
        assert client.get("/v1/auth/member/me", headers=_bearer(first)).status_code == 401
        assert client.get("/v1/auth/member/me", headers=_bearer(second)).status_code == 200

    def test_garbage_refresh_token(self, client):
        response = client.post("/v1/auth/member/refresh", json={"refresh_token": "not.a.token"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_lockout_after_repeated_failures(self, client):
        _register(client)
        for _ in range(4):
            assert _login(client, password="WrongPassword123!").status_code == 401

        locked = _login(client, password="WrongPassword123!")
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "account_locked"
        assert locked.headers["Retry-After"] == "900"

        # Correct password is refused while the lock holds
        assert _login(client).status_code == 423

    def test_login_history_newest_first(self, client):
        _register(client)
        _login(client, password="WrongPassword123!")
        tokens = _login(client).json()["data"]["tokens"]

        response = client.get("/v1/auth/member/login-history", headers=_bearer(tokens))
        outcomes = [item["outcome"] for item in response.json()["data"]["items"]]
        assert outcomes == ["success", "invalid_credentials"]


class TestSessions:
    def test_list_sessions_marks_current(self, client):
        _register(client)
        tokens = _login(client).json()["data"]["tokens"]

        response = client.get("/v1/auth/member/sessions", headers=_bearer(tokens))
        items = response.json()["data"]["items"]
        assert len(items) == 2
        assert [item["id"] for item in items if item["current"]] == [tokens["session_id"]]

    def test_logout_revokes_current_session(self, client):
        tokens = _register(client)["tokens"]

        response = client.post("/v1/auth/member/logout", headers=_bearer(tokens))
        assert response.json()["data"] == {"revoked": 1}
        assert client.get("/v1/auth/member/me", headers=_bearer(tokens)).status_code == 401

        refresh = client.post(
            "/v1/auth/member/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refresh.status_code == 401

    def test_logout_all_keeping_current(self, client):
        _register(client)
        _login(client)
        tokens = _login(client).json()["data"]["tokens"]

        response = client.post(
            "/v1/auth/member/logout-all", json={"keep_current": True}, headers=_bearer(tokens)
        )
        assert response.json()["data"] == {"revoked": 2}
        sessions = client.get("/v1/auth/member/sessions", headers=_bearer(tokens))
        assert [item["id"] for item in sessions.json()["data"]["items"]] == [tokens["session_id"]]

    def test_password_change_keeps_current_session(self, client):
        first = _register(client)["tokens"]
        tokens = _login(client).json()["data"]["tokens"]

        response = client.post(
            "/v1/auth/member/password/change",
            json={"current_password": PASSWORD, "new_password": "AnotherPassword456!"},
            headers=_bearer(tokens),
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"revoked": 1}
        assert client.get("/v1/auth/member/me", headers=_bearer(first)).status_code == 401
        assert _login(client, password="AnotherPassword456!").status_code == 200


class TestRecovery:
    def test_password_reset_flow(self, client, notifier):
        tokens = _register(client)["tokens"]

        response = client.post(
            "/v1/auth/member/password/reset/request", json={"email": "alice@example.com"}
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"accepted": True}
        reset_token = notifier.last("reset")

        confirm = client.post(
            "/v1/auth/member/password/reset/confirm",
            json={"token": reset_token, "new_password": "BrandNewPassword789!"},
        )
        assert confirm.status_code == 200
        assert confirm.json()["data"] == {"revoked": 1}

        again = client.post(
            "/v1/auth/member/password/reset/confirm",
            json={"token": reset_token, "new_password": "YetAnotherPassword1!"},
        )
        assert again.status_code == 401
        assert client.get("/v1/auth/member/me", headers=_bearer(tokens)).status_code == 401
        assert _login(client, password="BrandNewPassword789!").status_code == 200

    def test_reset_token_only_valid_on_its_role_path(self, client, notifier):
        _register(client)
        _register(client, role="seller")
        client.post("/v1/auth/member/password/reset/request", json={"email": "alice@example.com"})
        reset_token = notifier.last("reset")

        wrong_role = client.post(
            "/v1/auth/seller/password/reset/confirm",
            json={"token": reset_token, "new_password": "BrandNewPassword789!"},
        )
        assert wrong_role.status_code == 401
        assert wrong_role.json()["error"]["code"] == "token_invalid"
        assert _login(client, role="seller").status_code == 200

        confirm = client.post(
            "/v1/auth/member/password/reset/confirm",
            json={"token": reset_token, "new_password": "BrandNewPassword789!"},
        )
        assert confirm.status_code == 200

    def test_verify_token_only_valid_on_its_role_path(self, client, notifier):
        _register(client)
        verify_token = notifier.last("verify")

        response = client.post("/v1/auth/seller/email/verify/confirm", json={"token": verify_token})
        assert response.status_code == 401
        response = client.post("/v1/auth/member/email/verify/confirm", json={"token": verify_token})
        assert response.status_code == 200

    def test_reset_request_for_unknown_email_looks_accepted(self, client, notifier):
        response = client.post(
            "/v1/auth/member/password/reset/request", json={"email": "nobody@example.com"}
        )
        assert response.status_code == 200
        assert response.json()["data"] == {"accepted": True}
        assert notifier.sent == []

    def test_reset_requests_are_throttled(self, client, notifier):
        _register(client)
        for _ in range(3):
            client.post("/v1/auth/member/password/reset/request", json={"email": "alice@example.com"})
        response = client.post(
            "/v1/auth/member/password/reset/request", json={"email": "alice@example.com"}
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

    def test_email_verification(self, client, notifier):
        tokens = _register(client)["tokens"]
        verify_token = notifier.last("verify")

        response = client.post(
            "/v1/auth/member/email/verify/confirm", json={"token": verify_token}
        )
        assert response.status_code == 200
        assert response.json()["data"]["email_verified"] is True

        resend = client.post("/v1/auth/member/email/verify/request", headers=_bearer(tokens))
        assert resend.json()["data"] == {"sent": False}


class TestAdministration:
    @pytest.fixture
    def admin_tokens(self, client):
        runtime = get_runtime()
        runtime.store.create_principal(
            Role.ADMINISTRATOR.value,
            "root@example.com",
            runtime.auth.hasher.hash(PASSWORD),
            email_verified=True,
        )
        response = _login(client, email="root@example.com", role="administrator")
        assert response.status_code == 200, response.text
        return response.json()["data"]["tokens"]

    def test_unverified_administrator_cannot_log_in(self, client):
        _register(client, email="admin@example.com", role="administrator")
        response = _login(client, email="admin@example.com", role="administrator")
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "email_not_verified"

    def test_member_cannot_use_admin_routes(self, client):
        member = _register(client)
        response = client.get(
            f"/v1/admin/principals/{member['principal']['id']}", headers=_bearer(member["tokens"])
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_erase_principal(self, client, admin_tokens):
        member = _register(client)
        principal_id = member["principal"]["id"]

        lookup = client.get(f"/v1/admin/principals/{principal_id}", headers=_bearer(admin_tokens))
        assert lookup.status_code == 200
        assert lookup.json()["data"]["email"] == "alice@example.com"

        erased = client.delete(f"/v1/admin/principals/{principal_id}", headers=_bearer(admin_tokens))
        assert erased.json()["data"] == {"erased": True, "sessions_revoked": 1}

        assert client.get("/v1/auth/member/me", headers=_bearer(member["tokens"])).status_code == 401
        assert _login(client).status_code == 401
        missing = client.get(f"/v1/admin/principals/{principal_id}", headers=_bearer(admin_tokens))
        assert missing.status_code == 404

    def test_admin_cannot_erase_self(self, client, admin_tokens):
        me = client.get("/v1/auth/administrator/me", headers=_bearer(admin_tokens)).json()["data"]
        response = client.delete(f"/v1/admin/principals/{me['id']}", headers=_bearer(admin_tokens))
        assert response.status_code == 400


def test_healthz_reports_memory_store(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"] == {"status": "not_configured"}
