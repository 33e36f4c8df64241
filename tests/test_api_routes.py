"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> dependency injection
-> LoginOrchestrator -> SQLite -> response model serialization and the
shared error envelope. Unit testing individual route functions would miss
middleware, dependency injection, and response model validation.

Coverage:
  - Auth failures: 401 on Bearer-protected routes without a token, 403 for non-admins
  - Login: 200 pair, 401 generic failure, 423 lockout with lockout_until, MFA challenge
  - Refresh / logout / logout-all / verify
  - Register, password reset, me, sessions, JWKS, admin unlock and key rotation
  - Cache-Control and X-Correlation-ID headers

Fixtures used (from conftest.py):
  - api_client: (client, admin_token, admin_id) -- the admin is "testadmin"
  - make_account, orchestrator, notifier
"""

from __future__ import annotations

from fastapi.testclient import TestClient
from jose import jwt

PASSWORD = "Correct-Horse-7"


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, username: str, password: str = PASSWORD, **extra):
    return client.post("/api/v1/auth/login", json={"username": username, "password": password, **extra})


class TestApiAuthFailure:
    """Unauthenticated requests to protected routes must return 401."""

    def test_get_me_unauthenticated(self, api_client: tuple[TestClient, str, str]) -> None:
        """GET /api/v1/auth/me without Authorization header must return 401 with a Bearer challenge."""
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_logout_all_unauthenticated(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _uid = api_client
        assert client.post("/api/v1/auth/logout-all").status_code == 401

    def test_garbage_bearer_token(self, api_client: tuple[TestClient, str, str]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/sessions", headers=_bearer("not-a-token"))
        assert resp.status_code == 401

    def test_admin_routes_reject_regular_users(self, api_client, make_account) -> None:
        """A valid non-admin token gets 403 on admin routes."""
        client, _token, admin_id = api_client
        make_account("plainuser")
        token = _login(client, "plainuser").json()["access_token"]
        assert client.post("/api/v1/auth/keys/rotate", headers=_bearer(token)).status_code == 403
        resp = client.post(f"/api/v1/auth/accounts/{admin_id}/unlock", headers=_bearer(token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"


class TestLoginRoute:
    def test_login_success(self, api_client, make_account) -> None:
        """POST /login with valid credentials returns both tokens and no-store caching."""
        client, _token, _uid = api_client
        make_account("alice")
        resp = _login(client, "alice", device_info="pixel-9")
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["access_token"] and data["refresh_token"]
        assert data["token_type"] == "bearer"
        assert data["requires_mfa"] is False
        assert data["access_token_expiry"] is not None
        assert resp.headers["Cache-Control"] == "no-store"

    def test_wrong_password_and_unknown_user_are_identical(self, api_client, make_account) -> None:
        client, _token, _uid = api_client
        make_account("alice")
        wrong = _login(client, "alice", "Wrong-Horse-7")
        missing = _login(client, "nobody")
        assert wrong.status_code == missing.status_code == 401
        assert wrong.json() == missing.json()
        assert wrong.json()["error"]["code"] == "authentication_failed"

    def test_lockout_returns_423_with_lockout_until(self, api_client, make_account) -> None:
        client, _token, _uid = api_client
        make_account("alice")
        for _ in range(4):
            assert _login(client, "alice", "Wrong-Horse-7").status_code == 401
        resp = _login(client, "alice", "Wrong-Horse-7")
        assert resp.status_code == 423
        error = resp.json()["error"]
        assert error["code"] == "account_locked"
        assert error["lockout_until"].startswith("2026-01-15T12:30:00")

        assert _login(client, "alice").status_code == 423

    def test_mfa_account_gets_challenge(self, api_client, make_account) -> None:
        client, _token, _uid = api_client
        make_account("mfauser", mfa_enabled=True)
        data = _login(client, "mfauser").json()
        assert data["requires_mfa"] is True
        assert data["access_token"] is None
        assert data["refresh_token"] is None
        assert data["mfa_challenge"]

    def test_missing_field_is_422(self, api_client) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"username": "alice"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_validation_error_does_not_echo_password(self, api_client) -> None:
        client, _token, _uid = api_client
        secret = "S3cret-" + "x" * 200
        resp = client.post("/api/v1/auth/login", json={"username": "alice", "password": secret})
        assert resp.status_code == 422
        assert secret not in resp.text


class TestTokenLifecycleRoutes:
    def test_refresh_rotates_tokens(self, api_client, make_account) -> None:
        client, _token, _uid = api_client
        make_account("alice")
        first = _login(client, "alice").json()

        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert resp.status_code == 200, resp.text
        second = resp.json()
        assert second["refresh_token"] != first["refresh_token"]

        reuse = client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert reuse.status_code == 401
        assert reuse.json()["error"]["code"] == "session_invalid"

    def test_refresh_with_garbage_is_400(self, api_client) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "garbage"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_input"

    def test_logout_is_idempotent(self, api_client, make_account) -> None:
        client, _token, _uid = api_client
        make_account("alice")
        refresh = _login(client, "alice").json()["refresh_token"]
        for _ in range(2):
            resp = client.post("/api/v1/auth/logout", json={"refresh_token": refresh})
            assert resp.status_code == 200
            assert resp.json()["success"] is True

    def test_logout_with_malformed_token_is_400(self, api_client) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/logout", json={"refresh_token": "nope"})
        assert resp.status_code == 400

    def test_logout_with_non_string_jti_is_400(self, api_client) -> None:
        client, _token, _uid = api_client
        token = jwt.encode({"sub": "x", "jti": {"nested": 1}}, "k", algorithm="HS256")
        resp = client.post("/api/v1/auth/logout", json={"refresh_token": token})
        assert resp.status_code == 400

    def test_logout_all_reports_count(self, api_client, make_account) -> None:
        client, _token, _uid = api_client
        make_account("alice")
        tokens = [_login(client, "alice").json() for _ in range(3)]
        resp = client.post("/api/v1/auth/logout-all", headers=_bearer(tokens[0]["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["sessions_terminated"] == 3

    def test_verify_valid_token(self, api_client) -> None:
        client, token, admin_id = api_client
        data = client.get("/api/v1/auth/verify", headers=_bearer(token)).json()
        assert data["is_valid"] is True
        assert data["user_id"] == admin_id
        assert data["username"] == "testadmin"
        assert "admin" in data["roles"]

    def test_verify_without_token_is_invalid_not_error(self, api_client) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/verify")
        assert resp.status_code == 200
        assert resp.json()["is_valid"] is False

    def test_verify_expired_token(self, api_client, clock) -> None:
        client, token, _uid = api_client
        clock.advance(minutes=20)
        data = client.get("/api/v1/auth/verify", headers=_bearer(token)).json()
        assert data["is_valid"] is False
        assert data["error_message"] == "Invalid or expired token"


class TestAccountRoutes:
    def test_register(self, api_client) -> None:
        client, _token, _uid = api_client
        body = {"username": "newbie", "email": "Newbie@Example.com", "password": PASSWORD}
        resp = client.post("/api/v1/auth/register", json=body)
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["username"] == "newbie"
        assert data["email"] == "newbie@example.com"
        assert data["user_id"]

        dup = client.post("/api/v1/auth/register", json=body)
        assert dup.status_code == 409
        assert dup.json()["error"]["code"] == "conflict"

    def test_register_weak_password_is_422(self, api_client) -> None:
        client, _token, _uid = api_client
        body = {"username": "newbie", "email": "newbie@example.com", "password": "password"}
        assert client.post("/api/v1/auth/register", json=body).status_code == 422

    def test_password_reset_flow(self, api_client, make_account, notifier) -> None:
        client, _token, _uid = api_client
        make_account("alice")
        unknown = client.post("/api/v1/auth/password-reset/initiate", json={"username_or_email": "ghost"})
        known = client.post("/api/v1/auth/password-reset/initiate", json={"username_or_email": "alice"})
        assert unknown.status_code == known.status_code == 200
        assert unknown.json() == known.json()

        resp = client.post(
            "/api/v1/auth/password-reset/complete",
            json={"token": notifier.last_token, "new_password": "Brand-New-Pass-9"},
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["reset_at"] is not None
        assert _login(client, "alice", "Brand-New-Pass-9").status_code == 200

    def test_password_reset_with_bad_token_is_400(self, api_client) -> None:
        client, _token, _uid = api_client
        resp = client.post(
            "/api/v1/auth/password-reset/complete",
            json={"token": "made-up", "new_password": "Brand-New-Pass-9"},
        )
        assert resp.status_code == 400

    def test_me(self, api_client) -> None:
        client, token, admin_id = api_client
        data = client.get("/api/v1/auth/me", headers=_bearer(token)).json()
        assert data == {
            "user_id": admin_id,
            "username": "testadmin",
            "email": "testadmin@example.com",
            "roles": ["user", "admin"],
            "mfa_enabled": False,
        }

    def test_sessions_do_not_expose_jti(self, api_client) -> None:
        client, token, _uid = api_client
        resp = client.get("/api/v1/auth/sessions", headers=_bearer(token))
        assert resp.status_code == 200
        sessions = resp.json()
        assert len(sessions) == 1
        assert "jti" not in sessions[0]
        assert sessions[0]["session_id"]


class TestAdminRoutes:
    def test_unlock_account(self, api_client, make_account) -> None:
        client, token, _uid = api_client
        alice = make_account("alice")
        for _ in range(5):
            _login(client, "alice", "Wrong-Horse-7")
        assert _login(client, "alice").status_code == 423

        resp = client.post(f"/api/v1/auth/accounts/{alice.id}/unlock", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["user_id"] == alice.id
        assert _login(client, "alice").status_code == 200

    def test_unlock_unknown_account_is_404(self, api_client) -> None:
        client, token, _uid = api_client
        resp = client.post("/api/v1/auth/accounts/does-not-exist/unlock", headers=_bearer(token))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_rotate_keys_keeps_old_tokens_valid(self, api_client) -> None:
        client, token, _uid = api_client
        before = {k["kid"] for k in client.get("/api/v1/auth/jwks").json()["keys"]}
        resp = client.post("/api/v1/auth/keys/rotate", headers=_bearer(token))
        assert resp.status_code == 200
        new_kid = resp.json()["key_id"]
        assert new_kid not in before

        after = {k["kid"] for k in client.get("/api/v1/auth/jwks").json()["keys"]}
        assert after == before | {new_kid}
        assert client.get("/api/v1/auth/verify", headers=_bearer(token)).json()["is_valid"] is True


class TestMiddleware:
    def test_correlation_id_is_echoed(self, api_client) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/jwks", headers={"X-Correlation-ID": "abc-123"})
        assert resp.headers["X-Correlation-ID"] == "abc-123"

    def test_correlation_id_is_generated(self, api_client) -> None:
        client, _token, _uid = api_client
        assert client.get("/api/v1/auth/jwks").headers["X-Correlation-ID"]

    def test_untrusted_host_is_rejected(self, api_client) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/jwks", headers={"Host": "evil.example.com"})
        assert resp.status_code == 400

    def test_security_headers_on_api_responses(self, api_client) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/jwks")
        assert resp.headers["Strict-Transport-Security"] == "max-age=31536000; includeSubDomains"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert resp.headers["Content-Security-Policy"].startswith("default-src 'self'")
        assert "server" not in resp.headers

    def test_security_headers_on_error_responses(self, api_client) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.headers["X-Frame-Options"] == "DENY"

    def test_docs_get_a_csp_that_allows_the_ui_assets(self, api_client) -> None:
        client, _token, _uid = api_client
        resp = client.get("/docs")
        assert resp.status_code == 200
        assert "https://cdn.jsdelivr.net" in resp.headers["Content-Security-Policy"]


class TestMetricsRoute:
    def test_metrics_exposition(self, api_client, make_account) -> None:
        client, _token, _uid = api_client
        make_account("metricsuser")
        _login(client, "metricsuser")
        _login(client, "metricsuser", "Wrong-Horse-7")

        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        body = resp.text
        assert 'authgate_login_attempts_total{result="success",mfa_required="false"}' in body
        assert 'authgate_login_attempts_total{result="authentication_failed",mfa_required="false"} 1.0' in body
        assert "authgate_auth_request_duration_seconds_bucket" in body

    def test_metrics_needs_no_token(self, api_client) -> None:
        client, _token, _uid = api_client
        assert client.get("/metrics").status_code == 200
