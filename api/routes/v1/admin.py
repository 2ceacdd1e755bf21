"""
api/routes/v1/admin.py -- Account administration REST endpoints (admin only).

Routes:
  GET    /api/v1/admin/roles
  GET    /api/v1/admin/accounts/{id}
  POST   /api/v1/admin/accounts/{id}/block            -- body: {"reason": ...}
  POST   /api/v1/admin/accounts/{id}/unblock
  POST   /api/v1/admin/accounts/{id}/confirm-email
  POST   /api/v1/admin/accounts/{id}/reset-password   -- body: {"new_password": ...}
  POST   /api/v1/admin/accounts/{id}/roles/{role}
  DELETE /api/v1/admin/accounts/{id}/roles/{role}
  GET    /api/v1/admin/accounts/{id}/login-history?limit=50

Guards:
  An admin cannot block their own account or remove their own admin role;
  either would leave no recovery path without database access.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.models import AccountResponse, AdminPasswordRequest, AttemptResponse, BlockRequest
from api.responses import no_store, outcome_error
from identity.dependencies import ADMIN_ROLE, require_admin
from identity.engine import AuthEngine, AuthResult
from identity.models import Account

router = APIRouter(prefix="/admin")


def _engine(request: Request) -> AuthEngine:
    return request.app.state.engine


def _account_result(result: AuthResult) -> JSONResponse:
    if not result.success:
        return outcome_error(result)
    return JSONResponse(content=AccountResponse.from_account(result.account).model_dump(mode="json"))


def _refuse_self(current: Account, account_id: int, code: str, message: str) -> None:
    if current.id == account_id:
        raise HTTPException(status_code=400, detail={"code": code, "message": message})


@router.get("/roles", response_model=list[str])
def list_roles(request: Request, _admin: Account = Depends(require_admin)) -> list[str]:
    return _engine(request).list_roles()


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(request: Request, account_id: int, _admin: Account = Depends(require_admin)) -> AccountResponse:
    account = _engine(request).get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Account not found."})
    return AccountResponse.from_account(account)


@router.post("/accounts/{account_id}/block", response_model=AccountResponse)
def block_account(
    request: Request,
    account_id: int,
    body: BlockRequest,
    current: Account = Depends(require_admin),
) -> JSONResponse:
    """Block an account. Its open sessions end immediately."""
    _refuse_self(current, account_id, "self_block", "You cannot block your own account.")
    return _account_result(_engine(request).block_account(account_id, body.reason))


@router.post("/accounts/{account_id}/unblock", response_model=AccountResponse)
def unblock_account(request: Request, account_id: int, _admin: Account = Depends(require_admin)) -> JSONResponse:
    return _account_result(_engine(request).unblock_account(account_id))


@router.post("/accounts/{account_id}/confirm-email", response_model=AccountResponse)
def confirm_email(request: Request, account_id: int, _admin: Account = Depends(require_admin)) -> JSONResponse:
    return _account_result(_engine(request).confirm_email_manually(account_id))


@router.post("/accounts/{account_id}/reset-password", response_model=AccountResponse)
def reset_password(
    request: Request,
    account_id: int,
    body: AdminPasswordRequest,
    _admin: Account = Depends(require_admin),
) -> JSONResponse:
    """Set a password directly. Clears any lockout and ends the account's sessions."""
    return no_store(_account_result(_engine(request).admin_reset_password(account_id, body.new_password)))


@router.post("/accounts/{account_id}/roles/{role}", response_model=AccountResponse)
def assign_role(
    request: Request,
    account_id: int,
    role: str,
    _admin: Account = Depends(require_admin),
) -> JSONResponse:
    return _account_result(_engine(request).assign_role(account_id, role))


@router.delete("/accounts/{account_id}/roles/{role}", response_model=AccountResponse)
def remove_role(
    request: Request,
    account_id: int,
    role: str,
    current: Account = Depends(require_admin),
) -> JSONResponse:
    if role == ADMIN_ROLE:
        _refuse_self(current, account_id, "self_demotion", "You cannot remove your own admin role.")
    return _account_result(_engine(request).remove_role(account_id, role))


@router.get("/accounts/{account_id}/login-history", response_model=list[AttemptResponse])
def login_history(
    request: Request,
    account_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    _admin: Account = Depends(require_admin),
) -> list[AttemptResponse]:
    """Newest-first login attempts for one account."""
    engine = _engine(request)
    if engine.get_account(account_id) is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Account not found."})
    return [AttemptResponse.from_record(r) for r in engine.login_history(account_id, limit)]
