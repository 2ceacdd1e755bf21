"""
identity/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. JWT cookie ("access_token") -- set by the login and OAuth callback routes.
  2. Authorization: Bearer <token> header -- API clients.

A decoded token is accepted only while its session (jti) is still active, so
logout and terminate-sessions take effect before the JWT expires.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_account() and raises HTTP 403 without the
"admin" role.

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from identity.access import COOKIE_NAME, decode_access_token
from identity.engine import AuthEngine
from identity.models import Account

ADMIN_ROLE = "admin"


def get_access_payload(request: Request) -> dict | None:
    """Return the verified JWT payload from cookie or Bearer header, or None."""
    token: str | None = request.cookies.get(COOKIE_NAME)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    if not token:
        return None
    return decode_access_token(token)


def try_get_current_account(request: Request) -> Account | None:
    """Authenticate the request. Returns the Account or None; never raises 401."""
    payload = get_access_payload(request)
    if payload is None:
        return None

    engine: AuthEngine = request.app.state.engine
    if not engine.is_session_active(payload["jti"]):
        return None
    account = engine.get_account(payload["account_id"])
    if account is None or not account.is_active or account.is_blocked:
        return None
    request.state.session_id = payload["jti"]
    return account


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return account


def require_admin(request: Request) -> Account:
    """Require the admin role. HTTP 401 if unauthenticated, HTTP 403 otherwise."""
    account = get_current_account(request)
    if ADMIN_ROLE not in account.roles:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return account
