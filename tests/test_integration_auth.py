"""End-to-end account flows through the HTTP app.

Covers registration, login, token refresh, the CSRF and Origin checks, and
the email change round trip.
"""

import pytest
from fastapi.testclient import TestClient

from tollgate import app as app_module
from tollgate.service.gateway import ProviderUnavailable
from tollgate.service.guard import CSRF_MISSING
from tollgate.service.runtime import get_runtime

PASSWORD = "CorrectHorse1!"


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


def _register(client, email="member@example.com", **extra):
    response = client.post("/auth/register", json={"email": email, "password": PASSWORD, **extra})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _csrf_headers(client):
    response = client.get("/auth/csrf-token")
    assert response.status_code == 200
    token = response.headers["X-CSRF-Token"]
    assert response.json()["data"]["csrf_token"] == token
    return {"X-CSRF-Token": token}


def _latest_code(address):
    outbox = get_runtime().email.outbox
    message = [m for m in outbox if m["to"] == address][-1]
    return next(word for word in message["text"].split() if word.isdigit() and len(word) == 6)


class TestRegister:
    def test_register_logs_in_and_sets_refresh_cookie(self, client):
        data = _register(client, firstName="Ada", lastName="Lovelace")

        assert data["user"]["email"] == "member@example.com"
        assert data["user"]["first_name"] == "Ada"
        assert data["token"]
        assert data["message"] == "User registered and logged in successfully."
        assert client.cookies.get("refresh_token")
        assert "refresh_token" not in data

    def test_duplicate_registration(self, client):
        _register(client)

        response = client.post(
            "/auth/register", json={"email": "Member@Example.com", "password": PASSWORD}
        )

        assert response.status_code == 409
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "conflict"
        assert body["error"]["message"] == "User with this email already exists"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "password": PASSWORD},
            {"email": "short@example.com", "password": "abc"},
            {"password": PASSWORD},
        ],
    )
    def test_invalid_input(self, client, payload):
        response = client.post("/auth/register", json=payload)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestLogin:
    def test_login(self, client):
        _register(client)
        client.cookies.clear()

        response = client.post(
            "/auth/login", json={"email": "member@example.com", "password": PASSWORD}
        )

        assert response.status_code == 200
        assert response.json()["data"]["token"]
        assert client.cookies.get("refresh_token")

    def test_wrong_password_and_unknown_email_are_indistinguishable(self, client):
        _register(client)

        wrong = client.post("/auth/login", json={"email": "member@example.com", "password": "Wrong1!!"})
        unknown = client.post("/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["message"] == "Invalid email or password"

    def test_provider_outage_is_server_error(self, client):
        _register(client)

        async def unavailable(email, password):
            raise ProviderUnavailable("timed out", reason="TIMEOUT")

        get_runtime().gateway.verify_password = unavailable
        response = client.post(
            "/auth/login", json={"email": "member@example.com", "password": PASSWORD}
        )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert response.json()["error"]["message"] == "Authentication failed"

    def test_login_rate_limited(self, client):
        payload = {"email": "ghost@example.com", "password": PASSWORD}
        for _ in range(5):
            assert client.post("/auth/login", json=payload).status_code == 401

        response = client.post("/auth/login", json=payload)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0


class TestRefresh:
    def test_refresh_rotates_cookie(self, client):
        data = _register(client)
        original = client.cookies.get("refresh_token")

        response = client.post("/auth/refresh-token")

        assert response.status_code == 200
        assert response.json()["data"]["user"]["id"] == data["user"]["id"]
        assert client.cookies.get("refresh_token") != original

    def test_replayed_refresh_token_is_rejected(self, client):
        _register(client)
        original = client.cookies.get("refresh_token")
        assert client.post("/auth/refresh-token").status_code == 200
        client.cookies.clear()

        response = client.post("/auth/refresh-token", headers={"Cookie": f"refresh_token={original}"})

        assert response.status_code == 401

    def test_missing_cookie_clears_cookie(self, client):
        response = client.post("/auth/refresh-token")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "refresh token cookie missing"
        set_cookie = response.headers.get("set-cookie", "")
        assert "refresh_token=" in set_cookie
        assert "Max-Age=0" in set_cookie


class TestCsrf:
    def test_bearer_alone_does_not_satisfy_csrf(self, client):
        token = _register(client)["token"]

        response = client.post(
            "/auth/change-email",
            json={"newEmail": "new@example.com", "password": PASSWORD},
            headers=_bearer(token),
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert response.json()["error"]["message"] == CSRF_MISSING

    def test_forged_token_is_rejected(self, client):
        token = _register(client)["token"]
        _csrf_headers(client)

        response = client.post(
            "/auth/logout", headers={**_bearer(token), "X-CSRF-Token": "aaaaaaaa-forged"}
        )

        assert response.status_code == 403

    def test_token_in_json_body_is_accepted(self, client):
        token = _register(client)["token"]
        csrf_token = _csrf_headers(client)["X-CSRF-Token"]

        response = client.post("/auth/logout", json={"_csrf": csrf_token}, headers=_bearer(token))

        assert response.status_code == 200

    def test_safe_requests_receive_token(self, client):
        response = client.get("/auth/csrf-token")

        assert response.headers.get("X-CSRF-Token")
        assert client.cookies.get("_csrf")


class TestAccount:
    def test_me_requires_bearer(self, client):
        response = client.get("/auth/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_garbage_token(self, client):
        response = client.get("/auth/me", headers=_bearer("not-a-token"))

        assert response.status_code == 401

    def test_me_returns_profile(self, client):
        token = _register(client)["token"]

        response = client.get("/auth/me", headers=_bearer(token))

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "member@example.com"

    def test_reset_password_does_not_reveal_accounts(self, client):
        _register(client)

        known = client.post("/auth/reset-password", json={"email": "member@example.com"})
        unknown = client.post("/auth/reset-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_verify_email(self, client):
        token = _register(client)["token"]

        response = client.post("/auth/verify-email", headers={**_bearer(token), **_csrf_headers(client)})

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email_verified"] is True

    def test_logout_clears_refresh_cookie(self, client):
        token = _register(client)["token"]

        response = client.post("/auth/logout", headers={**_bearer(token), **_csrf_headers(client)})

        assert response.status_code == 200
        assert client.cookies.get("refresh_token") is None
        assert client.post("/auth/refresh-token").status_code == 401


class TestEmailChange:
    def test_change_email_round_trip(self, client):
        token = _register(client)["token"]
        headers = {**_bearer(token), **_csrf_headers(client)}

        started = client.post(
            "/auth/change-email",
            json={"newEmail": "moved@example.com", "password": PASSWORD},
            headers=headers,
        )
        assert started.status_code == 200, started.text
        assert started.json()["data"]["user"]["pending_email"] == "moved@example.com"

        finished = client.post(
            "/auth/verify-email-change",
            json={"verificationToken": _latest_code("moved@example.com")},
            headers=headers,
        )
        assert finished.status_code == 200, finished.text
        user = finished.json()["data"]["user"]
        assert user["email"] == "moved@example.com"
        assert user["pending_email"] is None

        client.cookies.clear()
        login = client.post("/auth/login", json={"email": "moved@example.com", "password": PASSWORD})
        assert login.status_code == 200

    def test_wrong_code(self, client):
        token = _register(client)["token"]
        headers = {**_bearer(token), **_csrf_headers(client)}
        client.post(
            "/auth/change-email",
            json={"newEmail": "moved@example.com", "password": PASSWORD},
            headers=headers,
        )
        code = _latest_code("moved@example.com")
        wrong = f"{(int(code) + 1) % 1_000_000:06d}"

        response = client.post(
            "/auth/verify-email-change", json={"verificationToken": wrong}, headers=headers
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid verification token"

    def test_verify_without_pending_change(self, client):
        token = _register(client)["token"]
        headers = {**_bearer(token), **_csrf_headers(client)}

        response = client.post(
            "/auth/verify-email-change", json={"verificationToken": "123456"}, headers=headers
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "No pending email change found"


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["profile_store"]["status"] == "healthy"


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
