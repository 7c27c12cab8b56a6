"""API routes for sign-in and account role and status changes."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from governance.api.deps import client_ip, get_clock, get_current_account, get_identity_authority, require_admin
from governance.api.routes import refusal
from governance.api.schemas import (
    AccountResponse,
    AccountUpdate,
    AdminCountResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PendingApprovalResponse,
)
from governance.database import get_db
from governance.models.domain import AdminAccount
from governance.models.enums import AccountStatus
from governance.services.accounts import AccountService
from governance.services.errors import GovernanceError, LockoutViolation, PermissionDenied
from governance.services.identity import IdentityAuthority, IdentityError
from governance.services.lockout_guard import LockoutGuard

logger = logging.getLogger(__name__)

router = APIRouter()


def _account_refusal(e: GovernanceError) -> HTTPException:
    # Last-admin protection and permission refusals are forbidden, not bad requests
    if isinstance(e, (LockoutViolation, PermissionDenied)):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.to_detail())
    return refusal(e)


def _pending_approval(message: str, pending_action_id: int) -> JSONResponse:
    body = PendingApprovalResponse(message=message, pending_action_id=pending_action_id)
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump(by_alias=True))


@router.get("/me", response_model=AccountResponse)
def me(account: AdminAccount = Depends(get_current_account)):
    return account


@router.post("/login", response_model=LoginResponse)
def login(
    body: LoginRequest,
    db: Session = Depends(get_db),
    identity: IdentityAuthority = Depends(get_identity_authority)
):
    """
    Exchange email and password for a bearer token.

    The Identity Authority checks the credentials; the local account decides
    whether the principal may use the service at all.
    """
    try:
        token = identity.sign_in(body.email, body.password)
        claim = identity.verify_token(token)
    except IdentityError:
        logger.info("login_failed email=%s", body.email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    account = db.query(AdminAccount).filter(AdminAccount.identity_uid == claim.subject).first()
    if account is None:
        logger.info("login_without_account subject=%s", claim.subject)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized: Unknown account")
    if account.status != AccountStatus.ACTIVE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden: Account is inactive")

    logger.info("login_succeeded account=%s", account.id)
    return {"token": token, "user": account}


@router.get("/accounts/admin-count", response_model=AdminCountResponse)
def admin_count(db: Session = Depends(get_db), admin: AdminAccount = Depends(require_admin)):
    return {"admin_count": LockoutGuard(db).active_admin_count()}


@router.patch(
    "/accounts/{account_id}",
    response_model=AccountResponse,
    responses={202: {"model": PendingApprovalResponse, "description": "Redirected into a pending action"}}
)
def update_account(
    account_id: int,
    body: AccountUpdate,
    request: Request,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    admin: AdminAccount = Depends(require_admin)
):
    """
    Change an account's role or status.

    Demoting or deactivating an active admin is never applied directly; it
    creates a pending action (202) or is refused outright for the last admin (403).
    """
    try:
        change = AccountService(db, clock).update(account_id, admin.id, body.role, body.status, client_ip(request))
    except GovernanceError as e:
        raise _account_refusal(e)

    if change.pending_action is not None:
        return _pending_approval(
            f"Admin change requires multi-party approval. Pending action created ({change.pending_action.action_type}).",
            change.pending_action.id
        )
    return change.account


@router.delete(
    "/accounts/{account_id}",
    response_model=MessageResponse,
    responses={202: {"model": PendingApprovalResponse, "description": "Redirected into a pending action"}}
)
def delete_account(
    account_id: int,
    request: Request,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    admin: AdminAccount = Depends(require_admin)
):
    try:
        change = AccountService(db, clock).delete(account_id, admin.id, client_ip(request))
    except GovernanceError as e:
        raise _account_refusal(e)

    if change.pending_action is not None:
        return _pending_approval(
            "Admin deletion requires multi-party approval. Pending action created.",
            change.pending_action.id
        )
    return {"message": "User deleted successfully"}
