"""
identity/access.py -- Signed access tokens for authenticated sessions.

Security design decisions:
  JWT: python-jose with HS256, signed with SECRET_KEY. Claims carry the
       account id, email (sub), role names and a random jti. The jti is the
       session id recorded by AuthEngine.open_session(), so a token can be
       revoked server-side before it expires.

  decode_access_token() returns None on any failure; the route layer turns
  that into a 401.

  The engine hands roles over explicitly on the Account it returns. Nothing
  here reads ambient identity state.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from core.config import get_settings
from identity.models import Account

_ALGORITHM = "HS256"
COOKIE_NAME = "access_token"


def create_access_token(account: Account, expire_seconds: int = 0) -> tuple[str, str, datetime]:
    """Encode a signed JWT for `account`.

    Returns (token, jti, expires_at). expire_seconds=0 means
    Settings.token_expire_seconds.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=duration)
    jti = secrets.token_urlsafe(16)
    payload = {
        "sub": account.email,
        "account_id": account.id,
        "roles": sorted(account.roles),
        "jti": jti,
        "exp": expires_at,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM), jti, expires_at


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, get_settings().secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "account_id" not in payload or "jti" not in payload:
        return None
    return payload


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT as an httpOnly, samesite=lax cookie matching the token expiry."""
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    response.set_cookie(
        COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=duration,
    )
