"""HTTP tests for the action gateway.

Exercises token extraction precedence, the auth flag, session cookies, the
error envelope, refresh/resolve/logout and the IP blocklist.
"""

import pytest
from fastapi.testclient import TestClient

from passgate.api.gateway import ACCESS_COOKIE, REFRESH_COOKIE
from passgate.api.routes import registry
from passgate.app import create_app
from passgate.service.passwords import encrypt_transport_password

EMAIL = "alice@example.com"
PASSWORD = "Correct-Horse-1"
TRANSPORT_SECRET = "transport-secret-for-tests"


def call(client, action, params=None, service="auth", **kwargs):
    return client.post(f"/api/{service}/v1/{action}", json=params or {}, **kwargs)


def blob(password=PASSWORD):
    return encrypt_transport_password(password, TRANSPORT_SECRET)


def request_code(client, mailer, purpose, email=EMAIL):
    response = call(client, "verifyCode", {"email": email, "type": purpose})
    assert response.json()["data"]["success"], response.json()
    return mailer.last_code(email)


def register_and_login(client, mailer, email=EMAIL, password=PASSWORD):
    code = request_code(client, mailer, "register", email)
    registered = call(client, "register", {"email": email, "code": code, "hash": blob(password)})
    assert registered.json()["data"]["success"], registered.json()
    code = request_code(client, mailer, "login", email)
    response = call(client, "login", {"email": email, "code": code, "hash": blob(password)})
    assert response.json()["data"]["success"], response.json()
    return response


def set_cookie_headers(response):
    return response.headers.get_list("set-cookie")


def cookie_header(response, name):
    for header in set_cookie_headers(response):
        if header.startswith(f"{name}="):
            return header
    raise AssertionError(f"{name} cookie not set")


class TestRegistry:
    def test_action_auth_flags(self):
        flags = {spec.name: spec.auth for spec in registry}
        assert flags == {
            "verifyCode": False,
            "register": False,
            "login": False,
            "forgetPassword": False,
            "updatePassword": True,
            "logout": True,
            "refreshToken": False,
            "resolveToken": False,
            "qrcode.getKey": False,
            "qrcode.status": False,
            "qrcode.scan": True,
            "qrcode.confirm": True,
            "qrcode.cancel": True,
        }

    def test_all_actions_live_under_auth_v1(self):
        assert {(spec.service, spec.version) for spec in registry} == {("auth", "v1")}


class TestEnvelope:
    def test_success_envelope(self, client, mailer):
        response = call(client, "verifyCode", {"email": EMAIL, "type": "login"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == 200
        assert body["data"] == {
            "content": {"expire": 300},
            "message": "verification code sent",
            "code": "SUCCESS",
            "success": True,
        }
        assert body["request_id"] == response.headers["X-Request-ID"]

    def test_request_id_is_echoed(self, client):
        response = call(
            client, "verifyCode", {"email": EMAIL, "type": "login"}, headers={"X-Request-ID": "abc-123"}
        )
        assert response.headers["X-Request-ID"] == "abc-123"
        assert response.json()["request_id"] == "abc-123"

    def test_business_failure_is_http_200(self, client):
        response = call(client, "verifyCode", {"email": "nope", "type": "login"})

        assert response.status_code == 200
        assert response.json()["data"]["code"] == "INVALID_EMAIL"
        assert response.json()["data"]["success"] is False

    def test_missing_params(self, client):
        response = call(client, "login", {"email": EMAIL})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["code"] == "VALIDATION_ERROR"
        assert "code" in data["message"]

    def test_non_object_body(self, client):
        response = client.post("/api/auth/v1/login", content=b"[1, 2]")
        assert response.json()["data"]["code"] == "VALIDATION_ERROR"

    def test_unknown_action(self, client):
        response = call(client, "teleport")

        assert response.status_code == 404
        assert response.json()["data"]["code"] == "NOT_FOUND"

    def test_mail_outage_is_503(self, client, mailer):
        mailer.fail = True
        response = call(client, "verifyCode", {"email": EMAIL, "type": "login"})

        assert response.status_code == 503
        assert response.json()["data"]["code"] == "TRANSIENT_FAILURE"

    def test_security_headers(self, client):
        response = call(client, "verifyCode", {"email": EMAIL, "type": "login"})

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"


class TestAuthentication:
    def test_protected_action_without_token(self, client):
        response = call(client, "logout")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["code"] == "NOT_LOGGED_IN"
        assert data["success"] is False

    def test_garbage_bearer_token(self, client):
        response = call(client, "logout", headers={"Authorization": "Bearer garbage"})

        assert response.status_code == 401
        assert response.json()["data"]["code"] == "UNAUTHORIZED"

    def test_non_bearer_scheme_counts_as_missing(self, client):
        response = call(client, "logout", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert response.json()["data"]["code"] == "NOT_LOGGED_IN"

    def test_bearer_token_authenticates(self, app, client, mailer):
        access = register_and_login(client, mailer).json()["data"]["content"]["accessToken"]
        fresh = TestClient(app)

        response = call(fresh, "logout", headers={"Authorization": f"Bearer {access}"})
        assert response.json()["data"]["code"] == "SUCCESS"

    def test_cookie_wins_over_bearer(self, client, mailer):
        register_and_login(client, mailer)

        response = call(client, "logout", headers={"Authorization": "Bearer garbage"})
        assert response.json()["data"]["code"] == "SUCCESS"

    def test_bad_cookie_is_not_rescued_by_bearer(self, app, client, mailer):
        access = register_and_login(client, mailer).json()["data"]["content"]["accessToken"]
        fresh = TestClient(app)

        response = call(
            fresh,
            "logout",
            headers={"Authorization": f"Bearer {access}", "Cookie": f"{ACCESS_COOKIE}=garbage"},
        )
        assert response.status_code == 401

    def test_expired_access_token(self, client, mailer, clock):
        register_and_login(client, mailer)
        clock.advance(7200)

        response = call(client, "logout")
        assert response.status_code == 401
        assert response.json()["data"]["code"] == "TOKEN_EXPIRED"


class TestSessionCookies:
    def test_login_sets_cookie_pair(self, client, mailer):
        response = register_and_login(client, mailer)
        content = response.json()["data"]["content"]

        access = cookie_header(response, ACCESS_COOKIE)
        refresh = cookie_header(response, REFRESH_COOKIE)
        assert access.startswith(f"{ACCESS_COOKIE}={content['accessToken']}")
        assert "Max-Age=7200" in access
        assert f"Max-Age={7 * 24 * 3600}" in refresh
        for header in (access, refresh):
            lowered = header.lower()
            assert "httponly" in lowered
            assert "samesite=strict" in lowered
            assert "path=/" in lowered

    def test_cookies_are_secure_by_default(self, make_runtime, mailer):
        client = TestClient(create_app(make_runtime(cookie_secure=True)))
        response = register_and_login(client, mailer)

        assert "secure" in cookie_header(response, ACCESS_COOKIE).lower()

    def test_failed_login_sets_no_cookies(self, client, mailer):
        code = request_code(client, mailer, "register")
        call(client, "register", {"email": EMAIL, "code": code, "hash": blob()})
        code = request_code(client, mailer, "login")

        response = call(client, "login", {"email": EMAIL, "code": code, "hash": blob("wrong-one")})

        assert response.json()["data"]["code"] == "PASSWORD_MISMATCH"
        assert set_cookie_headers(response) == []

    def test_logout_clears_cookies_and_revokes(self, app, client, mailer):
        access = register_and_login(client, mailer).json()["data"]["content"]["accessToken"]

        response = call(client, "logout")

        assert response.json()["data"]["code"] == "SUCCESS"
        for name in (ACCESS_COOKIE, REFRESH_COOKIE):
            assert "max-age=0" in cookie_header(response, name).lower()
        replay = call(TestClient(app), "logout", headers={"Authorization": f"Bearer {access}"})
        assert replay.status_code == 401


class TestRefreshAndResolve:
    def test_refresh_from_cookie_rotates_pair(self, client, mailer):
        first = register_and_login(client, mailer).json()["data"]["content"]

        response = call(client, "refreshToken")

        content = response.json()["data"]["content"]
        assert response.json()["data"]["code"] == "SUCCESS"
        assert content["refreshToken"] != first["refreshToken"]
        assert cookie_header(response, REFRESH_COOKIE).startswith(
            f"{REFRESH_COOKIE}={content['refreshToken']}"
        )

        replay = call(TestClient(client.app), "refreshToken", {"refreshToken": first["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["data"]["code"] == "UNAUTHORIZED"

    def test_refresh_works_with_expired_access_token(self, client, mailer, clock):
        register_and_login(client, mailer)
        clock.advance(7300)

        response = call(client, "refreshToken")
        assert response.json()["data"]["code"] == "SUCCESS"

    def test_expired_refresh_token(self, client, mailer, clock):
        register_and_login(client, mailer)
        clock.advance(7 * 24 * 3600 + 1)

        response = call(client, "refreshToken")
        assert response.status_code == 401
        assert response.json()["data"]["code"] == "UNAUTHORIZED"
        assert "log in again" in response.json()["data"]["message"]

    def test_refresh_without_token(self, client):
        response = call(client, "refreshToken")
        assert response.json()["data"]["code"] == "VALIDATION_ERROR"

    def test_resolve_token(self, client, mailer, clock):
        content = register_and_login(client, mailer).json()["data"]["content"]

        valid = call(client, "resolveToken", {"token": content["accessToken"]}).json()["data"]["content"]
        assert valid["valid"] is True
        assert valid["isExpired"] is False
        assert valid["userId"] == content["userId"]

        clock.advance(7200)
        expired = call(client, "resolveToken", {"token": content["accessToken"]}).json()["data"]["content"]
        assert expired == {"valid": False, "isExpired": True}

        bogus = call(client, "resolveToken", {"token": "bogus"}).json()["data"]["content"]
        assert bogus == {"valid": False, "isExpired": False}


class TestPasswordActions:
    def test_update_password_over_http(self, client, mailer):
        register_and_login(client, mailer)
        code = request_code(client, mailer, "update")

        response = call(client, "updatePassword", {"code": code, "hash": blob("New-Pass-2")})
        assert response.json()["data"]["code"] == "SUCCESS"

        code = request_code(client, mailer, "login")
        login = call(client, "login", {"email": EMAIL, "code": code, "hash": blob("New-Pass-2")})
        assert login.json()["data"]["success"]

    def test_forget_password_over_http(self, client, mailer):
        register_and_login(client, mailer)
        code = request_code(client, mailer, "forget")

        response = call(
            client, "forgetPassword", {"email": EMAIL, "code": code, "hash": blob("New-Pass-2")}
        )
        assert response.json()["data"]["code"] == "SUCCESS"


class TestRateLimitingAndBlocklist:
    def test_rate_limited_response(self, client):
        for _ in range(5):
            assert call(client, "qrcode.getKey").json()["data"]["success"]

        response = call(client, "qrcode.getKey")

        assert response.status_code == 429
        assert response.json()["data"]["code"] == "RATE_LIMITED"
        assert response.headers["Retry-After"] == "3600"

    def test_blocklist_rejects_after_rate_limit(self, make_runtime):
        client = TestClient(
            create_app(make_runtime(ip_blocklist_enabled=True, qr_max_scan_attempts=1))
        )
        assert call(client, "qrcode.getKey").status_code == 200
        assert call(client, "qrcode.getKey").json()["data"]["code"] == "RATE_LIMITED"

        response = call(client, "verifyCode", {"email": EMAIL, "type": "login"})
        assert response.status_code == 429
        assert response.json()["data"]["code"] == "IP_BLOCKED"

    def test_blocklist_off_by_default(self, client):
        for _ in range(6):
            call(client, "qrcode.getKey")

        response = call(client, "verifyCode", {"email": EMAIL, "type": "login"})
        assert response.status_code == 200


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "checks": {"cache": True, "store": True}}

    def test_healthz_degraded(self, make_runtime):
        runtime = make_runtime()

        async def down():
            raise ConnectionError("cache down")

        runtime.cache.ping = down
        response = TestClient(create_app(runtime)).get("/healthz")

        assert response.status_code == 503
        assert response.json()["checks"]["cache"] is False


@pytest.mark.parametrize("origin", ["http://localhost:3000"])
def test_cors_preflight(client, origin):
    response = client.options(
        "/api/auth/v1/login",
        headers={"Origin": origin, "Access-Control-Request-Method": "POST"},
    )
    assert response.headers["access-control-allow-origin"] == origin
    assert response.headers["access-control-allow-credentials"] == "true"
