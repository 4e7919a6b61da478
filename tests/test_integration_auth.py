"""Integration tests for the authentication API.

Covers the flows end to end through the FastAPI app:
- Registration and login
- Refresh rotation, replay rejection and CSRF on cookie refresh
- Logout
- Password reset by one-time passcode
- Health and metrics endpoints
"""

import pytest
from fastapi.testclient import TestClient

from tessera import app as app_module
from tessera.service.email import DeliveryResult
from tessera.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


class CapturingNotifier:
    def __init__(self):
        self.sent = []

    def reset_url(self, token):
        return f"http://testserver/reset-password?token={token}"

    def send(self, destination, template_id, data):
        self.sent.append((destination, template_id, data))
        return DeliveryResult(True)


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="testuser@example.com", password=PASSWORD):
    response = client.post("/v1/auth/register", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegisterAndLogin:
    """Sign-up and sign-in over HTTP."""

    def test_register_returns_credentials_and_cookies(self, client):
        """Registration signs the user in and sets the auth cookies."""
        data = _register(client)

        assert data["token_type"] == "bearer"
        assert data["access_token"] and data["refresh_token"] and data["csrf_token"]
        assert client.cookies.get("tessera_access") == data["access_token"]
        assert client.cookies.get("tessera_csrf") == data["csrf_token"]

    def test_duplicate_registration_conflicts(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/register", json={"email": "TestUser@example.com", "password": PASSWORD}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_session_endpoint(self, client):
        data = _register(client)

        response = client.get("/v1/auth/session", headers=_bearer(data["access_token"]))

        assert response.status_code == 200
        body = response.json()["data"]
        assert body["authenticated"] is True
        assert body["session_id"] == data["session_id"]
        assert body["user_id"] == data["user_id"]
        assert client.cookies.get("tessera_csrf") == body["csrf_token"]

    def test_wrong_password_is_unauthorized(self, client):
        _register(client)
        response = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": "WrongPassword1!"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_lockout_returns_423(self, client):
        """The fifth consecutive failure locks the account."""
        _register(client)
        statuses = [
            client.post(
                "/v1/auth/login",
                json={"email": "testuser@example.com", "password": "WrongPassword1!"},
            ).status_code
            for _ in range(5)
        ]
        assert statuses == [401, 401, 401, 401, 423]

        response = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD}
        )
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"


class TestRefresh:
    """Credential rotation over HTTP."""

    def test_refresh_with_body_rotates(self, client):
        """A body credential rotates; the old credential is then rejected."""
        data = _register(client)
        client.cookies.clear()

        response = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert response.status_code == 200
        rotated = response.json()["data"]
        assert rotated["session_id"] != data["session_id"]
        assert rotated["refresh_token"] != data["refresh_token"]

        client.cookies.clear()
        replay = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "session_invalid"

    def test_old_access_token_dies_with_its_session(self, client):
        data = _register(client)
        client.cookies.clear()
        client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})

        response = client.post("/v1/auth/logout", headers=_bearer(data["access_token"]))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "session_invalid"

    def test_cookie_refresh_requires_csrf_header(self, client):
        """Cookie-authenticated refresh without the double-submit header is refused."""
        _register(client)

        rejected = client.post("/v1/auth/refresh")
        assert rejected.status_code == 403
        assert rejected.json()["error"]["code"] == "csrf_invalid"

        accepted = client.post(
            "/v1/auth/refresh", headers={"X-CSRF-Token": client.cookies.get("tessera_csrf")}
        )
        assert accepted.status_code == 200
        assert client.cookies.get("tessera_refresh") == accepted.json()["data"]["refresh_token"]

    def test_refresh_without_credential(self, client):
        response = client.post("/v1/auth/refresh", json={})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_access_token_cannot_refresh(self, client):
        data = _register(client)
        client.cookies.clear()

        response = client.post("/v1/auth/refresh", json={"refresh_token": data["access_token"]})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "bad_signature"


class TestLogout:
    """Session revocation over HTTP."""

    def test_logout_revokes_session(self, client):
        data = _register(client)

        response = client.post("/v1/auth/logout", headers=_bearer(data["access_token"]))
        assert response.status_code == 200

        after = client.get("/v1/auth/session", headers=_bearer(data["access_token"]))
        assert after.status_code == 200
        assert after.json()["data"]["authenticated"] is False

    def test_logout_all_counts_sessions(self, client):
        data = _register(client)
        client.post("/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD})

        response = client.post("/v1/auth/logout-all", headers=_bearer(data["access_token"]))
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 2

    def test_cookie_logout_requires_csrf(self, client):
        _register(client)
        response = client.post("/v1/auth/logout")
        assert response.status_code == 403


class TestSessionStatus:
    """GET /session answers for anonymous and stale callers instead of failing."""

    def test_anonymous_caller(self, client):
        response = client.get("/v1/auth/session")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["authenticated"] is False
        assert data["csrf_token"] is None
        assert data["header_name"] == "X-CSRF-Token"
        assert client.cookies.get("tessera_csrf") is None

    def test_garbage_credential_is_anonymous(self, client):
        response = client.get("/v1/auth/session", headers=_bearer("garbage"))

        assert response.status_code == 200
        assert response.json()["data"]["authenticated"] is False


class TestChangePassword:
    """PUT /password re-checks the current password and keeps only the calling session."""

    def test_change_password_revokes_other_sessions(self, client):
        data = _register(client)
        other = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD}
        ).json()["data"]

        response = client.put(
            "/v1/auth/password",
            headers=_bearer(data["access_token"]),
            json={"current_password": PASSWORD, "new_password": "BrandNewPass456!"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["revoked_sessions"] == 1
        mine = client.get("/v1/auth/session", headers=_bearer(data["access_token"]))
        assert mine.json()["data"]["authenticated"] is True
        theirs = client.get("/v1/auth/session", headers=_bearer(other["access_token"]))
        assert theirs.json()["data"]["authenticated"] is False

        client.cookies.clear()
        old_login = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD}
        )
        assert old_login.status_code == 401

    def test_wrong_current_password(self, client):
        data = _register(client)

        response = client.put(
            "/v1/auth/password",
            headers=_bearer(data["access_token"]),
            json={"current_password": "NotMyPassword1!", "new_password": "BrandNewPass456!"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_cookie_change_requires_csrf(self, client):
        _register(client)
        body = {"current_password": PASSWORD, "new_password": "BrandNewPass456!"}

        rejected = client.put("/v1/auth/password", json=body)
        assert rejected.status_code == 403
        assert rejected.json()["error"]["code"] == "csrf_invalid"

        accepted = client.put(
            "/v1/auth/password",
            json=body,
            headers={"X-CSRF-Token": client.cookies.get("tessera_csrf")},
        )
        assert accepted.status_code == 200

    def test_requires_authentication(self, client):
        response = client.put(
            "/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": "BrandNewPass456!"},
        )
        assert response.status_code == 401


class TestAuthRateLimit:
    """One per-IP budget covers login, registration and the reset routes."""

    @pytest.fixture
    def strict_client(self, client):
        runtime = get_runtime()
        runtime.settings = runtime.settings.model_copy(update={"auth_rate_limit_max": 2})
        return client

    def test_login_attempts_are_throttled(self, strict_client):
        credentials = {"email": "ghost@example.com", "password": "WrongPassword1!"}
        statuses = [
            strict_client.post("/v1/auth/login", json=credentials).status_code for _ in range(3)
        ]

        assert statuses == [401, 401, 429]

    def test_budget_is_shared_with_reset_routes(self, strict_client):
        strict_client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        strict_client.post(
            "/v1/auth/password/verify-otp", json={"token": "deadbeef", "otp": "123456"}
        )

        blocked = strict_client.post(
            "/v1/auth/password/verify-otp", json={"token": "deadbeef", "otp": "123456"}
        )

        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "rate_limited"
        assert int(blocked.headers["Retry-After"]) >= 1
        assert get_runtime().events.count("AUTH_RATE_LIMITED") == 1

    def test_zero_disables_throttle(self, client):
        runtime = get_runtime()
        runtime.settings = runtime.settings.model_copy(update={"auth_rate_limit_max": 0})
        credentials = {"email": "ghost@example.com", "password": "WrongPassword1!"}

        statuses = {client.post("/v1/auth/login", json=credentials).status_code for _ in range(25)}

        assert statuses == {401}


class TestPasswordReset:
    """Forgot, verify and reset over HTTP."""

    def test_full_reset_flow(self, client):
        """Forgot, verify passcode, set new password, sign in with it."""
        notifier = CapturingNotifier()
        get_runtime().password_reset.notifier = notifier
        data = _register(client)

        forgot = client.post("/v1/auth/password/forgot", json={"email": "testuser@example.com"})
        assert forgot.status_code == 202
        assert forgot.json()["data"]["expires_in_minutes"] == 15
        assert forgot.json()["data"]["max_attempts"] == 3
        _, _, payload = notifier.sent[0]

        wrong = "000000" if payload["otp"] != "000000" else "111111"
        bad = client.post(
            "/v1/auth/password/verify-otp", json={"token": payload["token"], "otp": wrong}
        )
        assert bad.status_code == 401
        assert bad.json()["error"]["code"] == "otp_invalid"
        assert bad.json()["error"]["details"] == {"remaining_attempts": 2}

        verified = client.post(
            "/v1/auth/password/verify-otp", json={"token": payload["token"], "otp": payload["otp"]}
        )
        assert verified.status_code == 200
        reset_token = verified.json()["data"]["reset_session_token"]

        reset = client.post(
            "/v1/auth/password/reset",
            json={"reset_session_token": reset_token, "new_password": "BrandNewPass456!"},
        )
        assert reset.status_code == 200

        again = client.post(
            "/v1/auth/password/reset",
            json={"reset_session_token": reset_token, "new_password": "OtherPass789!"},
        )
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "token_consumed"

        client.cookies.clear()
        old_refresh = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert old_refresh.status_code == 401

        old_login = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD}
        )
        assert old_login.status_code == 401
        new_login = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": "BrandNewPass456!"}
        )
        assert new_login.status_code == 200

    def test_unknown_email_gets_same_response(self, client):
        _register(client)
        known = client.post("/v1/auth/password/forgot", json={"email": "testuser@example.com"})
        unknown = client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 202
        assert known.json()["data"] == unknown.json()["data"]

    def test_forgot_is_rate_limited(self, client):
        _register(client)
        statuses = [
            client.post(
                "/v1/auth/password/forgot", json={"email": "testuser@example.com"}
            ).status_code
            for _ in range(4)
        ]
        assert statuses == [202, 202, 202, 429]

        blocked = client.post("/v1/auth/password/forgot", json={"email": "testuser@example.com"})
        assert int(blocked.headers["Retry-After"]) >= 1
        assert blocked.json()["error"]["code"] == "rate_limited"

    def test_unknown_reset_token(self, client):
        response = client.post(
            "/v1/auth/password/verify-otp", json={"token": "deadbeef", "otp": "123456"}
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "token_invalid"


class TestOperationalEndpoints:
    """Health, metrics, CSRF issue and response headers."""

    def test_healthz(self, client):
        body = client.get("/healthz").json()

        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
        assert body["checks"]["redis"] == {"status": "not_configured"}

    def test_metrics_exports_event_counters(self, client):
        _register(client)

        text = client.get("/metrics").text

        assert 'tessera_info{version="0.1.0"} 1' in text
        assert "tessera_cache_available 0" in text
        assert 'tessera_security_events_total{event="REGISTER_SUCCESS"} 1' in text

    def test_csrf_endpoint_sets_cookie(self, client):
        response = client.get("/v1/auth/csrf")

        data = response.json()["data"]
        assert data["header_name"] == "X-CSRF-Token"
        assert client.cookies.get("tessera_csrf") == data["csrf_token"]

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]
