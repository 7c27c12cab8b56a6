"""
Executors - one handler per governed action type.

The workflow looks up the handler registered for an action's type and never
special-cases any type, including MODIFY_POLICY (whose payload is a policy
delta applied by its own handler).

Each handler returns a JSON-safe result that is stored on the pending action
and handed back to reverse() if the action is later reversed.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from governance.models.domain import AdminAccount, LEDGER_SETTINGS_ID, LedgerSettings
from governance.models.enums import AccountStatus, ActionType, Role
from governance.models.payloads import (
    AdminTargetPayload,
    AuditSuppressionPayload,
    DemoteAdminPayload,
    PolicyChangePayload,
    SystemRecoveryPayload,
)
from governance.services.errors import InvalidPayload, LockoutViolation, ReversalNotAllowed
from governance.services.lockout_guard import LockoutGuard, MIN_ACTIVE_ADMINS
from governance.services.policy_store import PolicyStore, snapshot

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    db: Session
    policies: PolicyStore
    guard: LockoutGuard
    now: datetime
    actor_id: Optional[int] = None


class ActionExecutor(ABC):
    """Base handler. Subclasses set action_type and implement apply()."""
    action_type: ActionType

    def validate(self, ctx: ExecutionContext, payload) -> None:
        """Semantic checks against current state, run when the action is created."""

    @abstractmethod
    def apply(self, ctx: ExecutionContext, payload) -> Dict[str, Any]:
        """Perform the action and return a JSON-safe result for reverse()."""

    def reverse(self, ctx: ExecutionContext, payload, result: Dict[str, Any]) -> None:
        raise ReversalNotAllowed(f"{self.action_type.value} has no compensating operation")


_EXECUTORS: Dict[ActionType, ActionExecutor] = {}


def register(cls):
    _EXECUTORS[cls.action_type] = cls()
    return cls


def get_executor(action_type: ActionType) -> ActionExecutor:
    return _EXECUTORS[action_type]


def _require_account(ctx: ExecutionContext, account_id: int) -> AdminAccount:
    account = ctx.db.get(AdminAccount, account_id)
    if account is None:
        raise InvalidPayload(f"Target account {account_id} does not exist", target_account_id=account_id)
    return account


class _AdminTargetExecutor(ActionExecutor):

    def validate(self, ctx: ExecutionContext, payload: AdminTargetPayload) -> None:
        account = _require_account(ctx, payload.target_account_id)
        if account.role != Role.ADMIN:
            raise InvalidPayload(
                f"Target account {account.id} is not an administrator",
                target_account_id=account.id
            )


@register
class DeleteAdminExecutor(_AdminTargetExecutor):
    action_type = ActionType.DELETE_ADMIN

    def apply(self, ctx: ExecutionContext, payload: AdminTargetPayload) -> Dict[str, Any]:
        account = _require_account(ctx, payload.target_account_id)
        deleted = {
            "id": account.id,
            "identity_uid": account.identity_uid,
            "email": account.email,
            "name": account.name,
            "role": account.role.value,
            "status": account.status.value,
        }
        ctx.db.delete(account)
        return {"deleted_account": deleted}

    def reverse(self, ctx: ExecutionContext, payload: AdminTargetPayload, result: Dict[str, Any]) -> None:
        deleted = result["deleted_account"]
        clash = ctx.db.query(AdminAccount).filter(
            (AdminAccount.id == deleted["id"]) | (AdminAccount.identity_uid == deleted["identity_uid"])
        ).first()
        if clash is not None:
            raise ReversalNotAllowed(
                "Cannot restore deleted account: its id or identity is in use again",
                account_id=clash.id
            )
        ctx.db.add(AdminAccount(
            id=deleted["id"],
            identity_uid=deleted["identity_uid"],
            email=deleted["email"],
            name=deleted["name"],
            role=Role(deleted["role"]),
            status=AccountStatus(deleted["status"]),
        ))


@register
class DemoteAdminExecutor(_AdminTargetExecutor):
    action_type = ActionType.DEMOTE_ADMIN

    def apply(self, ctx: ExecutionContext, payload: DemoteAdminPayload) -> Dict[str, Any]:
        account = _require_account(ctx, payload.target_account_id)
        previous = account.role
        account.role = payload.new_role
        return {"account_id": account.id, "previous_role": previous.value, "new_role": payload.new_role.value}

    def reverse(self, ctx: ExecutionContext, payload: DemoteAdminPayload, result: Dict[str, Any]) -> None:
        account = _require_reversal_target(ctx, result["account_id"])
        account.role = Role(result["previous_role"])


@register
class DeactivateAdminExecutor(_AdminTargetExecutor):
    action_type = ActionType.DEACTIVATE_ADMIN

    def apply(self, ctx: ExecutionContext, payload: AdminTargetPayload) -> Dict[str, Any]:
        account = _require_account(ctx, payload.target_account_id)
        previous = account.status
        account.status = AccountStatus.INACTIVE
        return {"account_id": account.id, "previous_status": previous.value}

    def reverse(self, ctx: ExecutionContext, payload: AdminTargetPayload, result: Dict[str, Any]) -> None:
        account = _require_reversal_target(ctx, result["account_id"])
        account.status = AccountStatus(result["previous_status"])


@register
class ModifyPolicyExecutor(ActionExecutor):
    action_type = ActionType.MODIFY_POLICY

    def validate(self, ctx: ExecutionContext, payload: PolicyChangePayload) -> None:
        self._target(ctx, payload)

    def _target(self, ctx: ExecutionContext, payload: PolicyChangePayload):
        policy = ctx.policies.get_any(payload.target_action_type)
        if policy is None:
            raise InvalidPayload(f"No policy exists for {payload.target_action_type.value}")
        # A disabled default would leave its action type ungoverned for good
        if payload.changes.enabled is False and policy.is_system_default:
            raise InvalidPayload(f"System default policy {policy.action_type} cannot be disabled")
        return policy

    def apply(self, ctx: ExecutionContext, payload: PolicyChangePayload) -> Dict[str, Any]:
        policy = self._target(ctx, payload)
        before = snapshot(policy)
        for field, value in payload.changes.model_dump(exclude_none=True, mode="json").items():
            setattr(policy, field, value)
        logger.info("policy_modified action_type=%s", policy.action_type)
        return {"policy_id": policy.id, "before": before, "after": snapshot(policy)}

    def reverse(self, ctx: ExecutionContext, payload: PolicyChangePayload, result: Dict[str, Any]) -> None:
        policy = ctx.policies.get_any(payload.target_action_type)
        if policy is None:
            raise ReversalNotAllowed(f"Policy {payload.target_action_type.value} no longer exists")
        for field, value in result["before"].items():
            setattr(policy, field, value)


@register
class SystemRecoveryExecutor(ActionExecutor):
    action_type = ActionType.SYSTEM_RECOVERY

    def validate(self, ctx: ExecutionContext, payload: SystemRecoveryPayload) -> None:
        _require_account(ctx, payload.target_account_id)

    def apply(self, ctx: ExecutionContext, payload: SystemRecoveryPayload) -> Dict[str, Any]:
        account = _require_account(ctx, payload.target_account_id)
        result = {
            "account_id": account.id,
            "previous_role": account.role.value,
            "previous_status": account.status.value,
        }
        account.role = Role.ADMIN
        account.status = AccountStatus.ACTIVE
        return result

    def reverse(self, ctx: ExecutionContext, payload: SystemRecoveryPayload, result: Dict[str, Any]) -> None:
        account = _require_reversal_target(ctx, result["account_id"])
        restored_role = Role(result["previous_role"])
        restored_status = AccountStatus(result["previous_status"])
        leaves_admin = restored_role != Role.ADMIN or restored_status != AccountStatus.ACTIVE
        if account.is_active_admin and leaves_admin:
            safety = ctx.guard.check_safety(account.id)
            if not safety.safe:
                raise LockoutViolation(
                    f"Reversal blocked: would reduce active admins below minimum ({MIN_ACTIVE_ADMINS})",
                    current_count=safety.current_count,
                    resulting_count=safety.resulting_count,
                    minimum_required=MIN_ACTIVE_ADMINS
                )
        account.role = restored_role
        account.status = restored_status


@register
class DisableAuditExecutor(ActionExecutor):
    action_type = ActionType.DISABLE_AUDIT

    def apply(self, ctx: ExecutionContext, payload: AuditSuppressionPayload) -> Dict[str, Any]:
        settings = ctx.db.get(LedgerSettings, LEDGER_SETTINGS_ID)
        if settings is None:
            settings = LedgerSettings(id=LEDGER_SETTINGS_ID, suppressed_resources=[])
            ctx.db.add(settings)
        previous = list(settings.suppressed_resources or [])
        settings.suppressed_resources = sorted(set(previous) | set(payload.resources))
        return {"previous_suppressed": previous, "suppressed": settings.suppressed_resources}

    def reverse(self, ctx: ExecutionContext, payload: AuditSuppressionPayload, result: Dict[str, Any]) -> None:
        settings = ctx.db.get(LedgerSettings, LEDGER_SETTINGS_ID)
        if settings is not None:
            settings.suppressed_resources = list(result["previous_suppressed"])


def _require_reversal_target(ctx: ExecutionContext, account_id: int) -> AdminAccount:
    account = ctx.db.get(AdminAccount, account_id)
    if account is None:
        raise ReversalNotAllowed(f"Account {account_id} no longer exists", account_id=account_id)
    return account
