"""
Request dependencies: principal resolution and service collaborators.

The bearer token is verified by the Identity Authority, but the principal's
role and status come only from the local account record. The claim's role
hint is never consulted.
"""
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from governance import config
from governance.database import SessionLocal, get_db
from governance.models.domain import AdminAccount
from governance.models.enums import AccountStatus, Role
from governance.services.clock import Clock, utcnow
from governance.services.identity import (
    DatabaseIdentityAuthority,
    IdentityAuthority,
    IdentityError,
    InMemoryIdentityAuthority,
)

logger = logging.getLogger(__name__)


def build_identity_authority(kind: Optional[str] = None) -> IdentityAuthority:
    """
    The Identity Authority named by IDENTITY_AUTHORITY.

    "database" keeps identities in the governance database so they survive a
    restart. "memory" loses them on restart and suits local development only.
    """
    kind = kind or config.IDENTITY_AUTHORITY
    if kind == "database":
        return DatabaseIdentityAuthority(SessionLocal)
    if kind == "memory":
        logger.warning("identity_authority_in_memory identities are lost on restart")
        return InMemoryIdentityAuthority()
    raise ValueError(f"Unknown IDENTITY_AUTHORITY {kind!r}; expected 'database' or 'memory'")


_identity_authority = build_identity_authority()


def get_identity_authority() -> IdentityAuthority:
    return _identity_authority


def get_clock() -> Clock:
    return utcnow


def get_recovery_token() -> Optional[str]:
    return config.get_recovery_token()


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_current_account(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    identity: IdentityAuthority = Depends(get_identity_authority)
) -> AdminAccount:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized: No token provided")

    try:
        claim = identity.verify_token(authorization[len("Bearer "):].strip())
    except IdentityError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized: Invalid token")

    account = db.query(AdminAccount).filter(AdminAccount.identity_uid == claim.subject).first()
    if account is None:
        logger.info("principal_without_account subject=%s", claim.subject)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized: Unknown account")
    if account.status != AccountStatus.ACTIVE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden: Account is inactive")
    return account


def require_admin(account: AdminAccount = Depends(get_current_account)) -> AdminAccount:
    if account.role != Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden: Admin access required")
    return account
