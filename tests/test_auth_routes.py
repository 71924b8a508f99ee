"""
HTTP boundary tests. Cookies are marked Secure, so the test client never
replays them over http; cookie-mode tests send a ``Cookie`` header by hand.
"""
import re

from fastapi.testclient import TestClient

from conftest import latest_code, wrong_code
from services.container import build_container

EMAIL = "user@example.com"
COOKIE_MODE = {"X-Auth-Method": "cookie"}


def set_cookies(response) -> dict:
    """Map cookie name -> raw Set-Cookie header."""
    headers = response.headers.get_list("set-cookie")
    return {header.split("=", 1)[0]: header for header in headers}


def cookie_value(header: str) -> str:
    return re.match(r"[^=]+=([^;]*)", header).group(1).strip('"')


def sign_in(client, email_sender, headers=None):
    assert client.post("/auth/request-otp", json={"email": EMAIL}).status_code == 200
    return client.post(
        "/auth/verify-otp",
        json={"email": EMAIL, "code": latest_code(email_sender, EMAIL)},
        headers=headers,
    )


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["data"]["status"] == "healthy"


def test_request_otp(client, email_sender):
    response = client.post("/auth/request-otp", json={"email": " User@Example.com "})

    assert response.status_code == 200
    body = response.json()
    assert body == {
        "success": True,
        "message": "Verification code sent to your email",
        "data": {"email": EMAIL, "expiresInMinutes": 10, "cooldownSeconds": 60},
    }
    assert latest_code(email_sender, EMAIL) not in response.text


def test_request_otp_invalid_email(client):
    response = client.post("/auth/request-otp", json={"email": "not-an-email"})

    assert response.status_code == 400
    error = response.json()["error"]
    assert response.json()["success"] is False
    assert error["code"] == "INVALID_EMAIL"
    assert error["details"][0]["field"] == "email"


def test_request_otp_missing_body(client):
    response = client.post("/auth/request-otp", json={})
    assert response.status_code == 400
    assert response.json()["error"]["code"] in ("INVALID_EMAIL", "VALIDATION_ERROR")


def test_request_otp_cooldown(client):
    client.post("/auth/request-otp", json={"email": EMAIL})
    response = client.post("/auth/request-otp", json={"email": EMAIL})

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    error = response.json()["error"]
    assert error["code"] == "OTP_COOLDOWN_ACTIVE"
    assert error["details"]["retryAfter"] == 60


def test_verify_otp_body_mode(client, email_sender):
    response = sign_in(client, email_sender)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["user"]["email"] == EMAIL
    assert data["user"]["lastLoginAt"]
    assert set(data["tokens"]) >= {"accessToken", "refreshToken", "expiresIn"}
    assert "set-cookie" not in response.headers


def test_verify_otp_errors(client, email_sender):
    response = client.post("/auth/verify-otp", json={"email": EMAIL, "code": "123456"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "OTP_NOT_FOUND"

    client.post("/auth/request-otp", json={"email": EMAIL})
    bad = wrong_code(latest_code(email_sender, EMAIL))
    response = client.post("/auth/verify-otp", json={"email": EMAIL, "code": bad})
    assert response.status_code == 400
    assert response.json()["error"] == {
        "code": "OTP_INVALID",
        "message": "Invalid OTP code",
        "details": {"attemptsRemaining": 4},
    }

    response = client.post("/auth/verify-otp", json={"email": EMAIL, "code": "12ab"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_OTP_CODE"


def test_me_and_refresh_with_bearer(client, email_sender):
    tokens = sign_in(client, email_sender).json()["data"]["tokens"]

    response = client.get("/auth/me", headers={"Authorization": f"Bearer {tokens['accessToken']}"})
    assert response.status_code == 200
    assert response.json()["data"]["user"]["email"] == EMAIL

    response = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["expiresIn"] == 900
    assert "refreshToken" not in data

    response = client.get("/auth/me", headers={"Authorization": f"Bearer {data['accessToken']}"})
    assert response.status_code == 200


def test_me_requires_auth(client):
    response = client.get("/auth/me")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"

    response = client.get("/auth/me", headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "TOKEN_INVALID"


def test_refresh_without_token(client):
    response = client.post("/auth/refresh")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "REFRESH_TOKEN_INVALID"


def test_logout_revokes_refresh_token(client, email_sender):
    tokens = sign_in(client, email_sender).json()["data"]["tokens"]

    response = client.post("/auth/logout", json={"refreshToken": tokens["refreshToken"]})
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Logged out successfully", "data": {}}

    response = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "REFRESH_TOKEN_INVALID"

    response = client.get("/auth/me", headers={"Authorization": f"Bearer {tokens['accessToken']}"})
    assert response.status_code == 401


def test_logout_always_succeeds(client):
    assert client.post("/auth/logout").status_code == 200
    assert client.post("/auth/logout", json={"refreshToken": "garbage"}).status_code == 200


def test_cookie_mode_flow(client, email_sender):
    response = sign_in(client, email_sender, headers=COOKIE_MODE)

    assert response.status_code == 200
    assert "tokens" not in response.json()["data"]

    cookies = set_cookies(response)
    access, refresh = cookies["accessToken"], cookies["refreshToken"]
    for header in (access, refresh):
        assert "HttpOnly" in header
        assert "Secure" in header
        assert "samesite=lax" in header.lower()
    assert "Path=/auth/refresh" in refresh
    assert "Max-Age=900" in access

    access_token, refresh_token = cookie_value(access), cookie_value(refresh)

    response = client.get("/auth/me", headers={"Cookie": f"accessToken={access_token}"})
    assert response.status_code == 200

    response = client.post(
        "/auth/refresh?authMethod=cookie",
        headers={"Cookie": f"refreshToken={refresh_token}"},
    )
    assert response.status_code == 200
    assert "accessToken" not in response.json()["data"]
    assert "accessToken" in set_cookies(response)

    response = client.post(
        "/auth/logout",
        headers={"Cookie": f"refreshToken={refresh_token}", **COOKIE_MODE},
    )
    assert response.status_code == 200
    cleared = set_cookies(response)
    assert "Max-Age=0" in cleared["accessToken"]
    assert "Max-Age=0" in cleared["refreshToken"]

    response = client.post("/auth/refresh", headers={"Cookie": f"refreshToken={refresh_token}"})
    assert response.status_code == 401


def test_logout_all(client, email_sender):
    tokens = sign_in(client, email_sender).json()["data"]["tokens"]

    response = client.post("/auth/logout-all", headers={"Authorization": f"Bearer {tokens['accessToken']}"})
    assert response.status_code == 200
    assert response.json()["data"] == {"revoked": 1}

    response = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert response.status_code == 401


def test_unknown_endpoint(client):
    response = client.get("/auth/nope")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "ENDPOINT_NOT_FOUND"


def test_unexpected_error_is_masked(container):
    from auth.auth_routes import get_auth_service
    from main import app

    class Exploding:
        async def request_code(self, email, client_ip):
            raise RuntimeError("database password is hunter2")

    app.state.container = container
    app.dependency_overrides[get_auth_service] = lambda: Exploding()
    try:
        with TestClient(app, raise_server_exceptions=False) as test_client:
            response = test_client.post("/auth/request-otp", json={"email": EMAIL})
    finally:
        app.dependency_overrides.clear()
        del app.state.container

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "INTERNAL_SERVER_ERROR"
    assert "hunter2" not in response.text


def test_cookie_logout_revokes_session_without_refresh_cookie(client, email_sender):
    cookies = set_cookies(sign_in(client, email_sender, headers=COOKIE_MODE))
    access_token = cookie_value(cookies["accessToken"])
    refresh_token = cookie_value(cookies["refreshToken"])

    # The refresh cookie is scoped to /auth/refresh, so only the access cookie arrives here
    response = client.post(
        "/auth/logout",
        headers={"Cookie": f"accessToken={access_token}", **COOKIE_MODE},
    )
    assert response.status_code == 200
    assert "Max-Age=0" in set_cookies(response)["refreshToken"]

    response = client.post("/auth/refresh", headers={"Cookie": f"refreshToken={refresh_token}"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "REFRESH_TOKEN_INVALID"

    response = client.get("/auth/me", headers={"Cookie": f"accessToken={access_token}"})
    assert response.status_code == 401

    # Idempotent
    assert client.post("/auth/logout", headers={"Cookie": f"accessToken={access_token}"}).status_code == 200


def test_logout_with_bearer_only(client, email_sender):
    tokens = sign_in(client, email_sender).json()["data"]["tokens"]

    response = client.post("/auth/logout", headers={"Authorization": f"Bearer {tokens['accessToken']}"})
    assert response.status_code == 200

    response = client.post("/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
    assert response.status_code == 401


def make_client(make_settings, clock, email_sender, **overrides):
    from main import app

    app.state.container = build_container(make_settings(**overrides), clock=clock, email_sender=email_sender)
    return app, TestClient(app)


def request_from(client, index, forwarded_for):
    return client.post(
        "/auth/request-otp",
        json={"email": f"user{index}@example.com"},
        headers={"X-Forwarded-For": forwarded_for, "X-Real-IP": forwarded_for},
    )


def test_spoofed_forwarded_for_shares_ip_window(make_settings, clock, email_sender):
    app, test_client = make_client(make_settings, clock, email_sender, OTP_REQUEST_MAX_PER_IP=3)
    try:
        with test_client:
            statuses = [request_from(test_client, i, f"198.51.100.{i}").status_code for i in range(4)]
            denied = request_from(test_client, 9, "203.0.113.250")
    finally:
        del app.state.container

    assert statuses == [200, 200, 200, 429]
    assert denied.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"


def test_forwarded_for_honoured_when_trusted(make_settings, clock, email_sender):
    app, test_client = make_client(
        make_settings, clock, email_sender, OTP_REQUEST_MAX_PER_IP=1, TRUST_PROXY_HEADERS=True,
    )
    try:
        with test_client:
            first = request_from(test_client, 0, "198.51.100.1")
            second = request_from(test_client, 1, "198.51.100.2")
            repeat = request_from(test_client, 2, "198.51.100.1")
    finally:
        del app.state.container

    assert (first.status_code, second.status_code, repeat.status_code) == (200, 200, 429)
