"""
Pending action workflow - the multi-party approval state machine.

All governed actions MUST go through here. Every transition:
- is evaluated against a fresh, version-checked read of the action, so two
  concurrent writers cannot both commit from the same state
- is committed before its audit entry is appended
- moves forward only; nothing returns to pending

Expiry is discovered lazily on access and by an idempotent sweep; there is no
background timer.
"""
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from governance.config import PENDING_ACTION_TTL_HOURS
from governance.models.audit import AuditAction, AuditResource
from governance.models.domain import AdminAccount, PendingAction
from governance.models.enums import (
    ADMIN_COUNT_AFFECTING,
    AccountStatus,
    ActionType,
    OPEN_STATUSES,
    PendingActionStatus,
    Role,
    TERMINAL_STATUSES,
)
from governance.models.payloads import parse_payload
from governance.services.audit_ledger import AuditLedger
from governance.services.clock import Clock, to_iso, utcnow
from governance.services.errors import (
    ActionNotFound,
    ConcurrentModification,
    DuplicateApproval,
    ExecutionNotReady,
    Expired,
    GovernanceError,
    InvalidPayload,
    InvalidStateTransition,
    LockoutViolation,
    PermissionDenied,
    PolicyNotFound,
    ReversalNotAllowed,
    SeparationOfPowersViolation,
)
from governance.services.executors import ExecutionContext, get_executor
from governance.services.lockout_guard import LockoutGuard, MIN_ACTIVE_ADMINS
from governance.services.policy_store import PolicyStore

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100


class PendingActionWorkflow:
    """Create, approve, veto, cancel, expire, execute and reverse governed actions."""

    def __init__(self, db: Session, clock: Clock = utcnow, ledger: Optional[AuditLedger] = None):
        self.db = db
        self.clock = clock
        self.ledger = ledger or AuditLedger(db, clock)
        self.policies = PolicyStore(db)
        self.guard = LockoutGuard(db)

    # Queries

    def get(self, action_id: int) -> PendingAction:
        action = self.db.get(PendingAction, action_id)
        if action is None:
            raise ActionNotFound("Pending action not found", action_id=action_id)
        return action

    def list_open(self) -> List[PendingAction]:
        """Pending and approved actions, newest first. Stale ones are swept first."""
        self.sweep_expired()
        return self.db.query(PendingAction).filter(
            PendingAction.status.in_(OPEN_STATUSES)
        ).order_by(PendingAction.created_at.desc(), PendingAction.id.desc()).all()

    def history(self, limit: int = HISTORY_LIMIT) -> List[PendingAction]:
        return self.db.query(PendingAction).filter(
            PendingAction.status.in_(TERMINAL_STATUSES)
        ).order_by(PendingAction.created_at.desc(), PendingAction.id.desc()).limit(limit).all()

    # Transitions

    def create(
        self,
        action_type: str,
        requestor_id: int,
        payload: Optional[dict],
        reason: Optional[str],
        ip: Optional[str] = None
    ) -> PendingAction:
        """
        Stage a governed action.

        Refuses when:
        - No enabled policy governs the action type
        - The requestor's role is not an allowed requestor
        - The payload does not match the action type's schema
        - The action would leave fewer than MIN_ACTIVE_ADMINS active admins
        """
        now = self.clock()
        kind = _governed_kind(action_type)
        policy = self.policies.get(kind) if kind is not None else None
        if policy is None:
            raise PolicyNotFound(f"No governance policy found for action: {action_type}", action_type=str(action_type))

        requestor = self._active_account(requestor_id)
        if requestor is None or requestor.role.value not in policy.allowed_requestors:
            raise PermissionDenied("You do not have permission to request this action")

        if not reason or not reason.strip():
            raise InvalidPayload("A reason is required for governed actions")

        parsed = parse_payload(kind, payload)
        get_executor(kind).validate(self._context(now, requestor_id), parsed)

        if kind in ADMIN_COUNT_AFFECTING:
            self._enforce_lockout(kind, parsed.target_account_id, requestor_id, ip, stage="request")

        action = PendingAction(
            action_type=kind.value,
            status=PendingActionStatus.PENDING,
            requested_by=requestor_id,
            action_payload=parsed.model_dump(mode="json"),
            reason=reason.strip(),
            # Snapshot: later policy changes never affect this action
            required_approvals=policy.required_approvals,
            approvals=[],
            expires_at=now + timedelta(hours=PENDING_ACTION_TTL_HOURS),
            request_ip=ip,
            created_at=now,
            updated_at=now
        )
        self.db.add(action)
        self.db.commit()
        self.db.refresh(action)

        self.ledger.append(
            AuditAction.PENDING_ACTION_CREATED,
            AuditResource.GOVERNANCE,
            {
                "action_type": kind.value,
                "action_id": action.id,
                "reason": action.reason,
                "payload": action.action_payload,
            },
            ip,
            user=requestor_id,
            resource_id=action.id
        )
        logger.info("pending_action_created id=%s type=%s requested_by=%s", action.id, kind.value, requestor_id)
        return action

    def approve(
        self,
        action_id: int,
        approver_id: int,
        comment: Optional[str] = None,
        ip: Optional[str] = None
    ) -> PendingAction:
        """
        Record one approval. Reaching quorum moves the action to approved and
        schedules execution after the policy delay.
        """
        now = self.clock()
        action = self._load_for_update(action_id)

        if action.status != PendingActionStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot approve action with status: {action.status.value}",
                current_status=action.status.value
            )
        self._expire_if_stale(action, now, ip)

        policy = self.policies.get(action.action_type)
        if policy is None:
            raise PolicyNotFound("Governance policy not found for this action", action_type=action.action_type)

        approver = self._active_account(approver_id)
        if approver is None or approver.role.value not in policy.allowed_approvers:
            raise PermissionDenied("You do not have permission to approve this action")

        # Separation of powers: requestor cannot approve their own action unless waived
        if not policy.self_approval_allowed and action.requested_by == approver_id:
            self.ledger.append(
                AuditAction.SEPARATION_OF_POWERS_VIOLATION,
                AuditResource.GOVERNANCE,
                {"action_id": action.id, "action_type": action.action_type},
                ip,
                user=approver_id,
                resource_id=action.id
            )
            logger.warning("separation_of_powers_violation id=%s account=%s", action.id, approver_id)
            raise SeparationOfPowersViolation("You cannot approve your own request (separation of powers)")

        if action.has_approved(approver_id):
            raise DuplicateApproval("You have already approved this action")

        # Re-check: the admin population may have changed since the request
        kind = ActionType(action.action_type)
        if kind in ADMIN_COUNT_AFFECTING:
            self._enforce_lockout(
                kind, action.action_payload["target_account_id"], approver_id, ip,
                stage="approval", action_id=action.id
            )

        # Replace rather than mutate so the change is flushed with the version check
        action.approvals = list(action.approvals or []) + [{
            "approver": approver_id,
            "approved_at": to_iso(now),
            "comment": comment or "",
        }]
        quorum_reached = action.has_quorum()
        if quorum_reached:
            action.status = PendingActionStatus.APPROVED
            action.approved_at = now
            action.scheduled_execution_at = now + timedelta(seconds=policy.execution_delay_seconds or 0)
        action.updated_at = now
        self._commit()
        self.db.refresh(action)

        self.ledger.append(
            AuditAction.PENDING_ACTION_APPROVED,
            AuditResource.GOVERNANCE,
            {
                "action_id": action.id,
                "action_type": action.action_type,
                "approver": approver_id,
                "total_approvals": len(action.approvals),
                "required_approvals": action.required_approvals,
                "quorum_reached": quorum_reached,
                "comment": comment,
            },
            ip,
            user=approver_id,
            resource_id=action.id
        )
        logger.info(
            "pending_action_approved id=%s approver=%s quorum_reached=%s",
            action.id, approver_id, quorum_reached
        )
        return self.get(action_id)

    def veto(
        self,
        action_id: int,
        vetoer_id: int,
        reason: Optional[str],
        ip: Optional[str] = None
    ) -> PendingAction:
        """
        Permanently block an action. Any active admin may veto, not only
        approvers, until the execution delay of an approved action has passed.
        """
        now = self.clock()
        action = self._load_for_update(action_id)

        if action.status not in OPEN_STATUSES:
            raise InvalidStateTransition(
                f"Cannot veto action with status: {action.status.value}",
                current_status=action.status.value
            )
        self._expire_if_stale(action, now, ip)

        if (
            action.status == PendingActionStatus.APPROVED
            and action.scheduled_execution_at is not None
            and now >= action.scheduled_execution_at
        ):
            raise InvalidStateTransition(
                "Cannot veto: execution delay has passed",
                current_status=action.status.value
            )

        vetoer = self._active_account(vetoer_id)
        if vetoer is None or vetoer.role != Role.ADMIN:
            raise PermissionDenied("Only administrators can veto actions")

        if not reason or not reason.strip():
            raise InvalidPayload("A veto reason is required")

        action.status = PendingActionStatus.VETOED
        action.vetoed_by = vetoer_id
        action.veto_reason = reason.strip()
        action.vetoed_at = now
        action.updated_at = now
        self._commit()

        self.ledger.append(
            AuditAction.PENDING_ACTION_VETOED,
            AuditResource.GOVERNANCE,
            {
                "action_id": action_id,
                "action_type": action.action_type,
                "vetoer": vetoer_id,
                "reason": reason.strip(),
            },
            ip,
            user=vetoer_id,
            resource_id=action_id
        )
        logger.info("pending_action_vetoed id=%s vetoer=%s", action_id, vetoer_id)
        return self.get(action_id)

    def cancel(self, action_id: int, requestor_id: int, ip: Optional[str] = None) -> PendingAction:
        """Withdraw a pending action. Only the original requestor may cancel."""
        now = self.clock()
        action = self._load_for_update(action_id)

        if action.status != PendingActionStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot cancel action with status: {action.status.value}",
                current_status=action.status.value
            )
        self._expire_if_stale(action, now, ip)

        if action.requested_by != requestor_id:
            raise PermissionDenied("Only the original requestor can cancel this action")

        action.status = PendingActionStatus.CANCELLED
        action.updated_at = now
        self._commit()

        self.ledger.append(
            AuditAction.PENDING_ACTION_CANCELLED,
            AuditResource.GOVERNANCE,
            {"action_id": action_id, "action_type": action.action_type},
            ip,
            user=requestor_id,
            resource_id=action_id
        )
        logger.info("pending_action_cancelled id=%s", action_id)
        return self.get(action_id)

    def sweep_expired(self) -> int:
        """
        Move every pending action past its expiry to expired.

        Each row is conditioned on still being pending, so concurrent sweeps
        are no-ops for one another. The version bump makes any approval that
        read the row before the sweep lose its commit.
        """
        now = self.clock()
        count = self.db.query(PendingAction).filter(
            PendingAction.status == PendingActionStatus.PENDING,
            PendingAction.expires_at < now
        ).update(
            {
                PendingAction.status: PendingActionStatus.EXPIRED,
                PendingAction.version: PendingAction.version + 1,
                PendingAction.updated_at: now,
            },
            synchronize_session=False
        )
        self.db.commit()

        if count:
            self.ledger.append(
                AuditAction.PENDING_ACTIONS_SWEPT,
                AuditResource.GOVERNANCE,
                {"expired_count": count},
                None
            )
            logger.info("pending_actions_expired count=%s", count)
        return count

    def execute(self, action_id: int, executor_id: int, ip: Optional[str] = None) -> PendingAction:
        """
        Apply an approved action whose execution delay has passed.

        The status re-check, the lockout re-check, the executor's effects and the
        move to executed commit together under the version check; a veto that
        commits first makes this fail with ConcurrentModification. Active admins
        are recounted after the effects are flushed, so a removal committed by a
        concurrent execution is seen before this one commits.
        """
        now = self.clock()
        action = self._load_for_update(action_id)

        if action.status != PendingActionStatus.APPROVED:
            raise InvalidStateTransition(
                f"Cannot execute action with status: {action.status.value}",
                current_status=action.status.value
            )
        if action.scheduled_execution_at is not None and now < action.scheduled_execution_at:
            raise ExecutionNotReady(
                "Execution delay has not passed yet",
                scheduled_execution_at=to_iso(action.scheduled_execution_at)
            )

        executor = self._active_account(executor_id)
        if executor is None or executor.role != Role.ADMIN:
            raise PermissionDenied("Only administrators can execute approved actions")

        kind = ActionType(action.action_type)
        payload = parse_payload(kind, action.action_payload)
        if kind in ADMIN_COUNT_AFFECTING:
            self._enforce_lockout(
                kind, payload.target_account_id, executor_id, ip,
                stage="execution", action_id=action.id, lock=True
            )

        try:
            result = get_executor(kind).apply(self._context(now, executor_id), payload)
            self._confirm_minimum_after(kind, action_id, executor_id, ip, stage="execution")
        except GovernanceError:
            self.db.rollback()
            raise

        policy = self.policies.get_any(kind)
        window = policy.reversibility_window_seconds if policy is not None else 0
        action.status = PendingActionStatus.EXECUTED
        action.executed_at = now
        action.executed_by = executor_id
        action.execution_result = result
        action.reversible_until = now + timedelta(seconds=window) if window > 0 else None
        action.updated_at = now
        self._commit()

        self.ledger.append(
            AuditAction.PENDING_ACTION_EXECUTED,
            AuditResource.GOVERNANCE,
            {
                "action_id": action_id,
                "action_type": kind.value,
                "executed_by": executor_id,
                "result": result,
            },
            ip,
            user=executor_id,
            resource_id=action_id
        )
        logger.info("pending_action_executed id=%s type=%s", action_id, kind.value)
        return self.get(action_id)

    def reverse(self, action_id: int, reverser_id: int, ip: Optional[str] = None) -> PendingAction:
        """Apply the compensating operation while the policy's reversibility window is open."""
        now = self.clock()
        action = self._load_for_update(action_id)

        if action.status != PendingActionStatus.EXECUTED:
            raise InvalidStateTransition(
                f"Cannot reverse action with status: {action.status.value}",
                current_status=action.status.value
            )
        if action.reversible_until is None:
            raise ReversalNotAllowed("This action is not reversible under its policy")
        if now >= action.reversible_until:
            raise ReversalNotAllowed(
                "Reversibility window has closed",
                reversible_until=to_iso(action.reversible_until)
            )

        reverser = self._active_account(reverser_id)
        if reverser is None or reverser.role != Role.ADMIN:
            raise PermissionDenied("Only administrators can reverse executed actions")

        kind = ActionType(action.action_type)
        payload = parse_payload(kind, action.action_payload)
        try:
            get_executor(kind).reverse(self._context(now, reverser_id), payload, action.execution_result or {})
            self._confirm_minimum_after(kind, action_id, reverser_id, ip, stage="reversal")
        except GovernanceError:
            self.db.rollback()
            raise

        action.status = PendingActionStatus.REVERSED
        action.reversed_at = now
        action.reversed_by = reverser_id
        action.updated_at = now
        self._commit()

        self.ledger.append(
            AuditAction.PENDING_ACTION_REVERSED,
            AuditResource.GOVERNANCE,
            {"action_id": action_id, "action_type": kind.value, "reversed_by": reverser_id},
            ip,
            user=reverser_id,
            resource_id=action_id
        )
        logger.info("pending_action_reversed id=%s type=%s", action_id, kind.value)
        return self.get(action_id)

    # Internals

    def _load_for_update(self, action_id: int) -> PendingAction:
        action = self.db.query(PendingAction).filter(
            PendingAction.id == action_id
        ).with_for_update().populate_existing().first()
        if action is None:
            raise ActionNotFound("Pending action not found", action_id=action_id)
        return action

    def _commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            logger.info("pending_action_write_conflict")
            raise ConcurrentModification("The action was modified concurrently; reload and retry")

    def _expire_if_stale(self, action: PendingAction, now, ip: Optional[str]) -> None:
        if action.status != PendingActionStatus.PENDING or now <= action.expires_at:
            return
        action.status = PendingActionStatus.EXPIRED
        action.updated_at = now
        self._commit()
        self.ledger.append(
            AuditAction.PENDING_ACTION_EXPIRED,
            AuditResource.GOVERNANCE,
            {"action_id": action.id, "action_type": action.action_type},
            ip,
            resource_id=action.id
        )
        raise Expired("This pending action has expired", expires_at=to_iso(action.expires_at))

    def _active_account(self, account_id: int) -> Optional[AdminAccount]:
        account = self.db.get(AdminAccount, account_id)
        if account is None or account.status != AccountStatus.ACTIVE:
            return None
        return account

    def _context(self, now, actor_id: Optional[int]) -> ExecutionContext:
        return ExecutionContext(db=self.db, policies=self.policies, guard=self.guard, now=now, actor_id=actor_id)

    def _enforce_lockout(
        self,
        kind: ActionType,
        target_account_id: int,
        actor_id: int,
        ip: Optional[str],
        stage: str,
        action_id: Optional[int] = None,
        lock: bool = False
    ) -> None:
        safety = self.guard.check_safety(target_account_id, lock=lock)
        if safety.safe:
            return
        self.ledger.append(
            AuditAction.LAST_ADMIN_PROTECTION,
            AuditResource.GOVERNANCE,
            {
                "action_type": kind.value,
                "action_id": action_id,
                "stage": stage,
                "target_account_id": target_account_id,
                "current_count": safety.current_count,
                "resulting_count": safety.resulting_count,
            },
            ip,
            user=actor_id,
            resource_id=action_id
        )
        logger.warning(
            "lockout_blocked type=%s stage=%s target=%s active_admins=%s",
            kind.value, stage, target_account_id, safety.current_count
        )
        raise LockoutViolation(
            f"Action blocked at {stage}: would reduce active admins below minimum ({MIN_ACTIVE_ADMINS}). "
            f"Current active admins: {safety.current_count}",
            current_count=safety.current_count,
            resulting_count=safety.resulting_count,
            minimum_required=MIN_ACTIVE_ADMINS
        )

    def _confirm_minimum_after(
        self,
        kind: ActionType,
        action_id: int,
        actor_id: int,
        ip: Optional[str],
        stage: str
    ) -> None:
        """
        Recount active admins with the executor's changes flushed but not committed.

        Catches a concurrent execution that removed another admin after our own
        pre-check passed. On a breach everything is rolled back before the
        refusal is audited.
        """
        self.db.flush()
        remaining = self.guard.active_admin_count(lock=True)
        if remaining >= MIN_ACTIVE_ADMINS:
            return
        self.db.rollback()
        current = self.guard.active_admin_count()
        self.ledger.append(
            AuditAction.LAST_ADMIN_PROTECTION,
            AuditResource.GOVERNANCE,
            {
                "action_type": kind.value,
                "action_id": action_id,
                "stage": stage,
                "current_count": current,
                "resulting_count": remaining,
            },
            ip,
            user=actor_id,
            resource_id=action_id
        )
        logger.warning(
            "lockout_blocked type=%s stage=%s active_admins=%s resulting=%s",
            kind.value, stage, current, remaining
        )
        raise LockoutViolation(
            f"Action blocked at {stage}: active admins would fall below minimum ({MIN_ACTIVE_ADMINS}). "
            f"Current active admins: {current}",
            current_count=current,
            resulting_count=remaining,
            minimum_required=MIN_ACTIVE_ADMINS
        )


def _governed_kind(action_type) -> Optional[ActionType]:
    try:
        return ActionType(action_type)
    except ValueError:
        return None
