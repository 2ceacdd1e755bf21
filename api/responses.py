"""
api/responses.py -- Mapping of engine outcomes onto HTTP responses.

AuthEngine reports every result as an AuthOutcome tag. Routes hand failed
results to outcome_error(), which picks the status code and wraps the
engine's message in the standard ErrorResponse envelope. The message is
passed through unchanged: the engine already collapsed security-relevant
causes, so the HTTP layer must not re-introduce a distinction.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from identity.engine import AuthOutcome, AuthResult

OUTCOME_STATUS: dict[AuthOutcome, int] = {
    AuthOutcome.EMAIL_TAKEN: 409,
    AuthOutcome.INVALID_CREDENTIALS: 401,
    AuthOutcome.ACCOUNT_BLOCKED: 403,
    AuthOutcome.TOO_MANY_ATTEMPTS: 429,
    AuthOutcome.EMAIL_NOT_CONFIRMED: 403,
    AuthOutcome.INVALID_OR_EXPIRED_TOKEN: 400,
    AuthOutcome.NOT_FOUND: 404,
    AuthOutcome.CONFLICT: 409,
    AuthOutcome.VALIDATION_FAILED: 422,
    AuthOutcome.STORE_UNAVAILABLE: 503,
}


def no_store(response: JSONResponse) -> JSONResponse:
    """Mark a credential-bearing response as uncacheable."""
    response.headers["Cache-Control"] = "no-store"
    return response


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return no_store(
        JSONResponse(
            status_code=status_code,
            content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(exclude_none=True),
        )
    )


def outcome_error(result: AuthResult) -> JSONResponse:
    """Render a failed AuthResult as its status code and error envelope."""
    response = error_response(OUTCOME_STATUS.get(result.outcome, 400), result.outcome.value, result.message)
    if result.retry_after_minutes:
        response.headers["Retry-After"] = str(result.retry_after_minutes * 60)
    return response


def client_origin(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def client_agent(request: Request) -> str | None:
    return request.headers.get("User-Agent")
