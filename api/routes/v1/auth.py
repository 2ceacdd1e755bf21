"""
api/routes/v1/auth.py -- Account self-service REST endpoints.

Routes:
  POST   /api/v1/auth/register                -- create account; sends confirmation
  POST   /api/v1/auth/login                   -- password login; sets JWT cookie
  POST   /api/v1/auth/logout                  -- ends the session; clears cookie
  GET    /api/v1/auth/confirm-email?token=    -- consume confirmation token
  POST   /api/v1/auth/forgot-password         -- request reset token (uniform reply)
  POST   /api/v1/auth/reset-password          -- consume reset token; new password
  POST   /api/v1/auth/change-password         -- requires auth
  GET    /api/v1/auth/me                      -- requires auth
  GET    /api/v1/auth/sessions                -- requires auth
  DELETE /api/v1/auth/sessions                -- end every other session
  GET    /api/v1/auth/providers               -- enabled OAuth providers (public)
  GET    /api/v1/auth/oauth/{provider}        -- redirect to the provider
  GET    /api/v1/auth/callback/{provider}     -- provider callback; sets JWT cookie

Security:
  Credential endpoints (login, register, forgot/reset password) are
  rate-limited per IP on top of the engine's per-account lockout.
  Every response that carries or consumes a credential is Cache-Control: no-store.
  Route handlers never inspect why a login or token failed; the engine
  already collapsed those causes into one outcome.

Route handlers are plain `def` (run in the threadpool) because the engine
does blocking bcrypt and database work. The OAuth routes are async for
authlib and push the engine call onto the threadpool.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_rate_limit
from api.models import (
    AccountResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OAuthProviderInfo,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SessionResponse,
    TerminatedResponse,
)
from api.responses import client_agent, client_origin, error_response, no_store, outcome_error
from core.config import get_settings
from identity.access import COOKIE_NAME, create_access_token, set_auth_cookie
from identity.dependencies import get_access_payload, get_current_account
from identity.engine import AuthEngine
from identity.models import Account
from identity.oauth import get_enabled_providers, get_oauth_user_info

logger = logging.getLogger("identitycore.api.auth")

# Auth policy:
# - register, login, logout, confirm-email, forgot/reset-password: public
# - providers, oauth/{provider}, callback/{provider}: public
# - me, change-password, sessions: requires auth (get_current_account)
router = APIRouter()


def _engine(request: Request) -> AuthEngine:
    return request.app.state.engine


def _issue_session(request: Request, account: Account) -> JSONResponse:
    """Sign a JWT for `account`, record its session, and set the cookie."""
    settings = get_settings()
    token, jti, expires_at = create_access_token(account)
    _engine(request).open_session(account.id, jti, expires_at, client_origin(request), client_agent(request))
    resp = JSONResponse(
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=settings.token_expire_seconds,
            account=AccountResponse.from_account(account),
        ).model_dump(mode="json"),
    )
    set_auth_cookie(resp, token)
    return no_store(resp)


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)
@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an unconfirmed account and send a confirmation link."""
    result = _engine(request).register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        origin=client_origin(request),
    )
    if not result.success:
        return outcome_error(result)
    return no_store(
        JSONResponse(
            status_code=201,
            content=RegisterResponse(
                message=result.message,
                account=AccountResponse.from_account(result.account),
            ).model_dump(mode="json"),
        )
    )


@limiter.limit(login_rate_limit)
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    Unknown email and wrong password produce the same 401 body.
    """
    result = _engine(request).login(
        body.email,
        body.password,
        origin=client_origin(request),
        client=client_agent(request),
    )
    if not result.success:
        return outcome_error(result)
    return _issue_session(request, result.account)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """End the current session (if any) and clear the cookie."""
    payload = get_access_payload(request)
    if payload is not None:
        _engine(request).end_session(payload["jti"])
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(COOKIE_NAME)
    return no_store(resp)


# ---------------------------------------------------------------------------
# Email confirmation and password recovery
# ---------------------------------------------------------------------------


@router.get("/auth/confirm-email", response_model=MessageResponse)
def confirm_email(request: Request, token: str) -> JSONResponse:
    """Consume a confirmation token. Every kind of bad token gets the same 400."""
    if not _engine(request).confirm_email(token):
        return error_response(400, "invalid_or_expired_token", "Invalid or expired token.")
    return no_store(JSONResponse(content={"message": "Your email address has been confirmed."}))


@limiter.limit(login_rate_limit)
@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Request a reset link. The reply never reveals whether the email exists."""
    _engine(request).request_password_reset(body.email, origin=client_origin(request))
    return no_store(
        JSONResponse(
            status_code=202,
            content={"message": "If an account exists for this email, a password reset link has been sent."},
        )
    )


@limiter.limit(login_rate_limit)
@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    result = _engine(request).reset_password(body.token, body.new_password, origin=client_origin(request))
    if not result.success:
        return outcome_error(result)
    return no_store(JSONResponse(content={"message": result.message}))


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current: Account = Depends(get_current_account),
) -> JSONResponse:
    """Change the signed-in account's password and end its other sessions."""
    engine = _engine(request)
    result = engine.change_password(current.id, body.current_password, body.new_password)
    if not result.success:
        return outcome_error(result)
    engine.terminate_sessions(current.id, except_session_id=request.state.session_id)
    return no_store(JSONResponse(content={"message": result.message}))


# ---------------------------------------------------------------------------
# Authenticated account views
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
def me(current: Account = Depends(get_current_account)) -> AccountResponse:
    return AccountResponse.from_account(current)


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, current: Account = Depends(get_current_account)) -> list[SessionResponse]:
    sessions = _engine(request).list_active_sessions(current.id)
    return [SessionResponse.from_session(s, request.state.session_id) for s in sessions]


@router.delete("/auth/sessions", response_model=TerminatedResponse)
def terminate_other_sessions(request: Request, current: Account = Depends(get_current_account)) -> TerminatedResponse:
    count = _engine(request).terminate_sessions(current.id, except_session_id=request.state.session_id)
    return TerminatedResponse(terminated=count)


# ---------------------------------------------------------------------------
# External identity providers
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first so a crafted
    name cannot reach create_client().
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return error_response(404, "unknown_provider", "This sign-in provider is not available.")

    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/callback/{provider}", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> JSONResponse:
    """Exchange the code, extract a verified identity, and sign in through the engine."""
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return error_response(404, "unknown_provider", "This sign-in provider is not available.")

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return error_response(401, "oauth_failed", "External sign-in failed.")

    try:
        identity = await get_oauth_user_info(client, provider, token)
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        return error_response(401, "oauth_failed", "External sign-in failed.")

    result = await run_in_threadpool(
        _engine(request).external_login, identity, client_origin(request), client_agent(request)
    )
    if not result.success:
        return outcome_error(result)
    return await run_in_threadpool(_issue_session, request, result.account)
