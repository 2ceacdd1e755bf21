"""
API request and response models for the identity REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in identity/models.py,
which own the internal domain representation. Route handlers map between the
two.

Malformed input (bad email, weak password) is rejected here with a 422
before any engine call, so the engine only ever sees well-formed data.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from identity.errors import ValidationFailure
from identity.models import Account, AttemptRecord, AuthSession
from identity.passwords import MAX_PASSWORD_BYTES, MIN_PASSWORD_LENGTH, check_password_strength


def _strong_password(value: str) -> str:
    try:
        return check_password_strength(value)
    except ValidationFailure as exc:
        raise ValueError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr = Field(max_length=255)
    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _strong_password(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    No strength rules here: a login must fail the same way for any wrong
    password, however it is shaped.
    """

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=128)

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _strong_password(value)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=128)

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return _strong_password(value)


class BlockRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    reason: str = Field(min_length=1, max_length=500)


class AdminPasswordRequest(BaseModel):
    """Admin-set password. Only the minimum length is enforced."""

    new_password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=128)

    @field_validator("new_password")
    @classmethod
    def fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        return value


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public view of an Account. Never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_confirmed: bool
    is_active: bool
    is_blocked: bool
    blocked_reason: Optional[str] = None
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    roles: list[str]

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            email_confirmed=account.email_confirmed,
            is_active=account.is_active,
            is_blocked=account.is_blocked,
            blocked_reason=account.blocked_reason,
            locked_until=account.locked_until,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
            roles=sorted(account.roles),
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    account: AccountResponse


class LoginResponse(BaseModel):
    """Response for a successful password or OAuth login."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    account: AccountResponse


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    origin: Optional[str] = None
    client: Optional[str] = None
    created_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    expires_at: datetime
    current: bool = False

    @classmethod
    def from_session(cls, session: AuthSession, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            origin=session.origin,
            client=session.client,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            expires_at=session.expires_at,
            current=session.session_id == current_id,
        )


class TerminatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    terminated: int


class AttemptResponse(BaseModel):
    """One row of an account's login history."""

    model_config = ConfigDict(frozen=True)

    email: str
    success: bool
    origin: str
    client: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: AttemptRecord) -> "AttemptResponse":
        return cls(
            email=record.email,
            success=record.success,
            origin=record.origin,
            client=record.client,
            failure_reason=record.failure_reason,
            created_at=record.created_at,
        )


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
