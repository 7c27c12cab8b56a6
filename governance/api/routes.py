"""API routes for the governance engine."""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from governance.api.deps import (
    client_ip,
    get_clock,
    get_identity_authority,
    get_recovery_token,
    require_admin,
)
from governance.api.schemas import (
    AccountCreatedResponse,
    AdminSafetyResponse,
    ApproveRequest,
    AuditEntryResponse,
    BootstrapRequest,
    ChainVerificationResponse,
    PendingActionCreate,
    PendingActionResponse,
    PolicyResponse,
    RecoveryRequest,
    StatusResponse,
    VetoRequest,
)
from governance.database import get_db
from governance.models.domain import AdminAccount
from governance.services.audit_ledger import AuditLedger
from governance.services.bootstrap import IdentityBootstrap
from governance.services.errors import GovernanceError
from governance.services.identity import IdentityAuthority, IdentityError
from governance.services.lockout_guard import LockoutGuard
from governance.services.policy_store import PolicyStore
from governance.services.workflow import PendingActionWorkflow

router = APIRouter()


def refusal(e: GovernanceError) -> HTTPException:
    """Translate a governance refusal into an HTTP error with its structured context."""
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


# Bootstrap and recovery (no admin principal required)
@router.get("/status", response_model=StatusResponse)
def governance_status(
    db: Session = Depends(get_db),
    identity: IdentityAuthority = Depends(get_identity_authority)
):
    """Whether the system has been bootstrapped and has an active admin."""
    return IdentityBootstrap(db, identity).status()


@router.post("/bootstrap-admin", response_model=AccountCreatedResponse, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(
    body: BootstrapRequest,
    request: Request,
    db: Session = Depends(get_db),
    identity: IdentityAuthority = Depends(get_identity_authority),
    clock=Depends(get_clock)
):
    """
    Create the first administrator.

    WILL REFUSE if the bootstrap lock is already set (409), permanently.
    """
    bootstrap = IdentityBootstrap(db, identity, clock=clock)
    try:
        account = bootstrap.bootstrap(body.email, body.password, body.name, client_ip(request))
    except GovernanceError as e:
        raise refusal(e)
    except IdentityError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"message": str(e)})
    return {
        "message": "Bootstrap admin created successfully. Bootstrap is now permanently disabled.",
        "user": account,
    }


@router.post("/admin-recovery", response_model=AccountCreatedResponse, status_code=status.HTTP_201_CREATED)
def admin_recovery(
    body: RecoveryRequest,
    request: Request,
    db: Session = Depends(get_db),
    identity: IdentityAuthority = Depends(get_identity_authority),
    recovery_token: Optional[str] = Depends(get_recovery_token),
    clock=Depends(get_clock)
):
    """Restore an administrator with the out-of-band recovery token."""
    bootstrap = IdentityBootstrap(db, identity, recovery_token=recovery_token, clock=clock)
    try:
        account = bootstrap.recover(body.recovery_token, body.email, body.password, body.name, client_ip(request))
    except GovernanceError as e:
        raise refusal(e)
    except IdentityError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"message": str(e)})
    return {"message": "Recovery admin created successfully", "user": account}


# Policies
@router.get("/policies", response_model=List[PolicyResponse])
def list_policies(db: Session = Depends(get_db), admin: AdminAccount = Depends(require_admin)):
    return PolicyStore(db).list()


# Pending actions
@router.get("/pending-actions", response_model=List[PendingActionResponse])
def list_pending_actions(
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    admin: AdminAccount = Depends(require_admin)
):
    """Pending and approved actions. Expired ones are swept first."""
    return PendingActionWorkflow(db, clock).list_open()


@router.get("/pending-actions/history", response_model=List[PendingActionResponse])
def pending_action_history(
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    admin: AdminAccount = Depends(require_admin)
):
    """Terminal actions, newest 100."""
    return PendingActionWorkflow(db, clock).history()


@router.get("/pending-actions/{action_id}", response_model=PendingActionResponse)
def get_pending_action(
    action_id: int,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    admin: AdminAccount = Depends(require_admin)
):
    try:
        return PendingActionWorkflow(db, clock).get(action_id)
    except GovernanceError as e:
        raise refusal(e)


@router.post("/pending-actions", response_model=PendingActionResponse, status_code=status.HTTP_201_CREATED)
def create_pending_action(
    body: PendingActionCreate,
    request: Request,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    admin: AdminAccount = Depends(require_admin)
):
    """
    Stage a governed action.

    WILL REFUSE if:
    - The action type is ungoverned
    - The requestor's role may not request it
    - It would leave the system without an active admin
    """
    try:
        return PendingActionWorkflow(db, clock).create(
            body.action_type, admin.id, body.payload, body.reason, client_ip(request)
        )
    except GovernanceError as e:
        raise refusal(e)


@router.post("/pending-actions/{action_id}/approve", response_model=PendingActionResponse)
def approve_pending_action(
    action_id: int,
    request: Request,
    body: Optional[ApproveRequest] = None,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    admin: AdminAccount = Depends(require_admin)
):
    comment = body.comment if body else None
    try:
        return PendingActionWorkflow(db, clock).approve(action_id, admin.id, comment, client_ip(request))
    except GovernanceError as e:
        raise refusal(e)


@router.post("/pending-actions/{action_id}/veto", response_model=PendingActionResponse)
def veto_pending_action(
    action_id: int,
    body: VetoRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    admin: AdminAccount = Depends(require_admin)
):
    try:
        return PendingActionWorkflow(db, clock).veto(action_id, admin.id, body.reason, client_ip(request))
    except GovernanceError as e:
        raise refusal(e)


@router.post("/pending-actions/{action_id}/cancel", response_model=PendingActionResponse)
def cancel_pending_action(
    action_id: int,
    request: Request,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    admin: AdminAccount = Depends(require_admin)
):
    try:
        return PendingActionWorkflow(db, clock).cancel(action_id, admin.id, client_ip(request))
    except GovernanceError as e:
        raise refusal(e)


@router.post("/pending-actions/{action_id}/execute", response_model=PendingActionResponse)
def execute_pending_action(
    action_id: int,
    request: Request,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    admin: AdminAccount = Depends(require_admin)
):
    """Apply an approved action once its execution delay has passed."""
    try:
        return PendingActionWorkflow(db, clock).execute(action_id, admin.id, client_ip(request))
    except GovernanceError as e:
        raise refusal(e)


@router.post("/pending-actions/{action_id}/reverse", response_model=PendingActionResponse)
def reverse_pending_action(
    action_id: int,
    request: Request,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
    admin: AdminAccount = Depends(require_admin)
):
    """Undo an executed action inside its policy's reversibility window."""
    try:
        return PendingActionWorkflow(db, clock).reverse(action_id, admin.id, client_ip(request))
    except GovernanceError as e:
        raise refusal(e)


# Audit and safety
@router.get("/audit", response_model=List[AuditEntryResponse])
def list_audit_entries(
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    admin: AdminAccount = Depends(require_admin)
):
    return AuditLedger(db).recent(limit)


@router.get("/audit/verify", response_model=ChainVerificationResponse)
def verify_audit_chain(
    limit: int = Query(1000, ge=1),
    db: Session = Depends(get_db),
    admin: AdminAccount = Depends(require_admin)
):
    return AuditLedger(db).verify(limit).to_dict()


@router.get("/admin-safety", response_model=AdminSafetyResponse)
def admin_safety(db: Session = Depends(get_db), admin: AdminAccount = Depends(require_admin)):
    return LockoutGuard(db).summary()
