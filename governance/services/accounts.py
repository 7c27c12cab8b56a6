"""
Role and status changes on local accounts.

Changes that would remove an active administrator never apply directly: they
are redirected into DEMOTE_ADMIN / DEACTIVATE_ADMIN / DELETE_ADMIN pending
actions. Everything else applies immediately with an audit entry.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from governance.models.audit import AuditAction, AuditResource
from governance.models.domain import AdminAccount, PendingAction
from governance.models.enums import AccountStatus, ActionType, Role
from governance.services.clock import Clock, utcnow
from governance.services.errors import ActionNotFound, InvalidPayload, PermissionDenied
from governance.services.workflow import PendingActionWorkflow

logger = logging.getLogger(__name__)


@dataclass
class AccountChange:
    """Either the updated account, or the pending action the change was redirected into."""
    account: Optional[AdminAccount] = None
    pending_action: Optional[PendingAction] = None


class AccountService:

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.workflow = PendingActionWorkflow(db, clock)
        self.ledger = self.workflow.ledger

    def get(self, account_id: int) -> AdminAccount:
        account = self.db.get(AdminAccount, account_id)
        if account is None:
            raise ActionNotFound("User not found", account_id=account_id)
        return account

    def update(
        self,
        account_id: int,
        actor_id: int,
        role: Optional[Role] = None,
        status: Optional[AccountStatus] = None,
        ip: Optional[str] = None
    ) -> AccountChange:
        if role is None and status is None:
            raise InvalidPayload("At least one field (status or role) must be provided for update.")

        account = self.get(account_id)
        new_role = role or account.role
        new_status = status or account.status
        stays_active_admin = new_role == Role.ADMIN and new_status == AccountStatus.ACTIVE

        if account.is_active_admin and not stays_active_admin:
            if new_role != Role.ADMIN:
                pending = self.workflow.create(
                    ActionType.DEMOTE_ADMIN.value,
                    actor_id,
                    {"target_account_id": account.id, "target_email": account.email, "new_role": new_role.value},
                    f"Demote admin {account.email} to {new_role.value}",
                    ip
                )
            else:
                pending = self.workflow.create(
                    ActionType.DEACTIVATE_ADMIN.value,
                    actor_id,
                    {"target_account_id": account.id, "target_email": account.email},
                    f"Deactivate admin {account.email}",
                    ip
                )
            return AccountChange(pending_action=pending)

        previous_role, previous_status = account.role, account.status
        account.role = new_role
        account.status = new_status
        self.db.commit()
        self.db.refresh(account)

        if new_role != previous_role:
            promoted = previous_role != Role.ADMIN and new_role == Role.ADMIN
            self.ledger.append(
                AuditAction.USER_PROMOTED_TO_ADMIN if promoted else AuditAction.USER_ROLE_CHANGED,
                AuditResource.USER,
                {"changed_by": actor_id, "email": account.email, "from": previous_role.value, "to": new_role.value},
                ip,
                user=actor_id,
                resource_id=account.id
            )
        if new_status != previous_status:
            self.ledger.append(
                AuditAction.USER_STATUS_CHANGED,
                AuditResource.USER,
                {"changed_by": actor_id, "email": account.email, "from": previous_status.value, "to": new_status.value},
                ip,
                user=actor_id,
                resource_id=account.id
            )
        return AccountChange(account=self.get(account_id))

    def delete(self, account_id: int, actor_id: int, ip: Optional[str] = None) -> AccountChange:
        account = self.get(account_id)
        if account.id == actor_id:
            raise PermissionDenied("Cannot delete your own account")

        if account.is_active_admin:
            pending = self.workflow.create(
                ActionType.DELETE_ADMIN.value,
                actor_id,
                {"target_account_id": account.id, "target_email": account.email},
                f"Delete admin {account.email}",
                ip
            )
            return AccountChange(pending_action=pending)

        email = account.email
        self.db.delete(account)
        self.db.commit()
        self.ledger.append(
            AuditAction.USER_DELETED,
            AuditResource.USER,
            {"deleted_by": actor_id, "email": email},
            ip,
            user=actor_id,
            resource_id=account_id
        )
        logger.info("account_deleted id=%s by=%s", account_id, actor_id)
        return AccountChange()
