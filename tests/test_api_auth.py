"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

Covers:
  - register: 201, duplicate 409, weak password / bad email 422
  - login: unconfirmed 403, confirmed 200 with cookie and no-store, lockout 429
  - confirm-email: single use, generic 400
  - forgot/reset password: uniform 202, reset flow end to end
  - me / sessions / logout: session-backed JWTs, revocation
"""

from __future__ import annotations

import pytest

PASSWORD = "Str0ng!Pass"
NEW_PASSWORD = "N3w!Secret"


@pytest.fixture
def ctx(api_context):
    api_context.client.cookies.clear()
    return api_context


def _register_and_confirm(ctx, email: str, password: str = PASSWORD) -> None:
    resp = ctx.client.post("/api/v1/auth/register", json={"email": email, "password": password})
    assert resp.status_code == 201, resp.text
    token = ctx.notifier.last_confirmation_token(email)
    assert ctx.client.get("/api/v1/auth/confirm-email", params={"token": token}).status_code == 200


def _login(ctx, email: str, password: str = PASSWORD) -> str:
    resp = ctx.client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    ctx.client.cookies.clear()
    return resp.json()["access_token"]


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_returns_201_and_unconfirmed_account(self, ctx) -> None:
        resp = ctx.client.post(
            "/api/v1/auth/register",
            json={"email": "reg@example.com", "password": PASSWORD, "first_name": "Reg"},
        )
        assert resp.status_code == 201
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["account"]["email"] == "reg@example.com"
        assert data["account"]["email_confirmed"] is False
        assert data["account"]["roles"] == ["member"]
        assert "password_hash" not in resp.text

    def test_duplicate_email_is_409(self, ctx) -> None:
        ctx.client.post("/api/v1/auth/register", json={"email": "dup@example.com", "password": PASSWORD})
        resp = ctx.client.post("/api/v1/auth/register", json={"email": "dup@example.com", "password": PASSWORD})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "email_taken"

    @pytest.mark.parametrize(
        "body",
        [
            {"email": "weak@example.com", "password": "weakpassw0rd"},
            {"email": "weak@example.com", "password": "Sh0rt!"},
            {"email": "not-an-email", "password": PASSWORD},
            {"email": "weak@example.com"},
        ],
    )
    def test_invalid_input_is_422_without_echoing_values(self, ctx, body) -> None:
        resp = ctx.client.post("/api/v1/auth/register", json=body)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        if "password" in body:
            assert body["password"] not in resp.text


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_unconfirmed_login_is_403(self, ctx) -> None:
        ctx.client.post("/api/v1/auth/register", json={"email": "unconf@example.com", "password": PASSWORD})
        resp = ctx.client.post("/api/v1/auth/login", json={"email": "unconf@example.com", "password": PASSWORD})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "email_not_confirmed"

    def test_confirmed_login_sets_cookie_and_no_store(self, ctx) -> None:
        _register_and_confirm(ctx, "ok@example.com")
        resp = ctx.client.post("/api/v1/auth/login", json={"email": "ok@example.com", "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        assert "access_token=" in resp.headers["set-cookie"]
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["account"]["email"] == "ok@example.com"
        assert data["account"]["last_login_at"] is not None

    def test_unknown_email_and_wrong_password_share_one_body(self, ctx) -> None:
        _register_and_confirm(ctx, "same@example.com")
        unknown = ctx.client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
        wrong = ctx.client.post("/api/v1/auth/login", json={"email": "same@example.com", "password": "Wrong!Pass1"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_lockout_is_429_with_retry_after(self, ctx) -> None:
        _register_and_confirm(ctx, "locked@example.com")
        for _ in range(5):
            ctx.client.post("/api/v1/auth/login", json={"email": "locked@example.com", "password": "Wrong!Pass1"})
        resp = ctx.client.post("/api/v1/auth/login", json={"email": "locked@example.com", "password": PASSWORD})
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "too_many_attempts"
        assert resp.headers["retry-after"] == "900"

    def test_blocked_account_is_403_with_reason(self, ctx) -> None:
        _register_and_confirm(ctx, "blocked@example.com")
        account = ctx.engine.get_account_by_email("blocked@example.com")
        ctx.engine.block_account(account.id, "terms violation")
        resp = ctx.client.post("/api/v1/auth/login", json={"email": "blocked@example.com", "password": PASSWORD})
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "Your account is blocked. Reason: terms violation"


# ---------------------------------------------------------------------------
# Email confirmation and password recovery
# ---------------------------------------------------------------------------


class TestConfirmEmail:
    def test_token_is_single_use(self, ctx) -> None:
        ctx.client.post("/api/v1/auth/register", json={"email": "conf@example.com", "password": PASSWORD})
        token = ctx.notifier.last_confirmation_token("conf@example.com")
        first = ctx.client.get("/api/v1/auth/confirm-email", params={"token": token})
        second = ctx.client.get("/api/v1/auth/confirm-email", params={"token": token})
        assert first.status_code == 200
        assert second.status_code == 400
        assert second.json()["error"]["code"] == "invalid_or_expired_token"

    def test_garbage_token_gets_the_same_400(self, ctx) -> None:
        resp = ctx.client.get("/api/v1/auth/confirm-email", params={"token": "garbage"})
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "Invalid or expired token."


class TestPasswordRecovery:
    def test_forgot_password_is_uniform(self, ctx) -> None:
        _register_and_confirm(ctx, "forgot@example.com")
        known = ctx.client.post("/api/v1/auth/forgot-password", json={"email": "forgot@example.com"})
        unknown = ctx.client.post("/api/v1/auth/forgot-password", json={"email": "nobody@example.com"})
        assert known.status_code == unknown.status_code == 202
        assert known.json() == unknown.json()

    def test_reset_flow(self, ctx) -> None:
        _register_and_confirm(ctx, "reset@example.com")
        ctx.client.post("/api/v1/auth/forgot-password", json={"email": "reset@example.com"})
        token = ctx.notifier.last_reset_token("reset@example.com")

        resp = ctx.client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert resp.status_code == 200
        assert resp.json()["message"] == "Your password has been changed."

        again = ctx.client.post("/api/v1/auth/reset-password", json={"token": token, "new_password": NEW_PASSWORD})
        assert again.status_code == 400

        old = ctx.client.post("/api/v1/auth/login", json={"email": "reset@example.com", "password": PASSWORD})
        assert old.status_code == 401
        _login(ctx, "reset@example.com", NEW_PASSWORD)

    def test_reset_with_weak_password_is_422(self, ctx) -> None:
        resp = ctx.client.post("/api/v1/auth/reset-password", json={"token": "x", "new_password": "weakweak"})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Authenticated routes and sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_me_requires_auth(self, ctx) -> None:
        resp = ctx.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_with_bearer_token(self, ctx) -> None:
        _register_and_confirm(ctx, "me@example.com")
        token = _login(ctx, "me@example.com")
        resp = ctx.client.get("/api/v1/auth/me", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["email"] == "me@example.com"

    def test_logout_revokes_the_token(self, ctx) -> None:
        _register_and_confirm(ctx, "bye@example.com")
        token = _login(ctx, "bye@example.com")
        assert ctx.client.post("/api/v1/auth/logout", headers=_bearer(token)).status_code == 200
        assert ctx.client.get("/api/v1/auth/me", headers=_bearer(token)).status_code == 401

    def test_list_and_terminate_other_sessions(self, ctx) -> None:
        _register_and_confirm(ctx, "multi@example.com")
        first = _login(ctx, "multi@example.com")
        second = _login(ctx, "multi@example.com")

        sessions = ctx.client.get("/api/v1/auth/sessions", headers=_bearer(second)).json()
        assert len(sessions) == 2
        assert sum(s["current"] for s in sessions) == 1

        resp = ctx.client.delete("/api/v1/auth/sessions", headers=_bearer(second))
        assert resp.json() == {"terminated": 1}
        assert ctx.client.get("/api/v1/auth/me", headers=_bearer(first)).status_code == 401
        assert ctx.client.get("/api/v1/auth/me", headers=_bearer(second)).status_code == 200

    def test_change_password_keeps_current_session_only(self, ctx) -> None:
        _register_and_confirm(ctx, "change@example.com")
        other = _login(ctx, "change@example.com")
        current = _login(ctx, "change@example.com")

        wrong = ctx.client.post(
            "/api/v1/auth/change-password",
            json={"current_password": "Wrong!Pass1", "new_password": NEW_PASSWORD},
            headers=_bearer(current),
        )
        assert wrong.status_code == 401

        resp = ctx.client.post(
            "/api/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers=_bearer(current),
        )
        assert resp.status_code == 200
        assert ctx.client.get("/api/v1/auth/me", headers=_bearer(current)).status_code == 200
        assert ctx.client.get("/api/v1/auth/me", headers=_bearer(other)).status_code == 401

    def test_blocking_revokes_live_tokens(self, ctx) -> None:
        _register_and_confirm(ctx, "revoked@example.com")
        token = _login(ctx, "revoked@example.com")
        account = ctx.engine.get_account_by_email("revoked@example.com")
        ctx.engine.block_account(account.id, "abuse")
        assert ctx.client.get("/api/v1/auth/me", headers=_bearer(token)).status_code == 401


# ---------------------------------------------------------------------------
# External providers
# ---------------------------------------------------------------------------


def test_providers_empty_when_unconfigured(ctx) -> None:
    resp = ctx.client.get("/api/v1/auth/providers")
    assert resp.status_code == 200
    assert resp.json() == []


@pytest.mark.parametrize("path", ["/api/v1/auth/oauth/github", "/api/v1/auth/callback/google"])
def test_disabled_provider_is_404(ctx, path) -> None:
    resp = ctx.client.get(path)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "unknown_provider"
