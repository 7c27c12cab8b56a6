"""
Policy store - source of truth for quorum, eligibility, delay and reversibility.

There is deliberately no direct write path for policies here other than
insert-if-absent seeding. Changing a policy is itself a governed action
(MODIFY_POLICY) applied by its executor.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from governance.models.domain import Policy
from governance.models.enums import ActionType, Role

logger = logging.getLogger(__name__)

_ADMIN_ONLY = [Role.ADMIN.value]

DEFAULT_POLICIES: List[Dict[str, Any]] = [
    {
        "action_type": ActionType.DELETE_ADMIN.value,
        "description": "Delete an administrator account",
        "required_approvals": 2,
        "self_approval_allowed": False,
        "execution_delay_seconds": 300,
        "reversibility_window_seconds": 3600,
    },
    {
        "action_type": ActionType.DEMOTE_ADMIN.value,
        "description": "Demote an administrator to engineer",
        "required_approvals": 2,
        "self_approval_allowed": False,
        "execution_delay_seconds": 300,
        "reversibility_window_seconds": 3600,
    },
    {
        "action_type": ActionType.DEACTIVATE_ADMIN.value,
        "description": "Deactivate an administrator account",
        "required_approvals": 2,
        "self_approval_allowed": False,
        "execution_delay_seconds": 300,
        "reversibility_window_seconds": 3600,
    },
    {
        "action_type": ActionType.MODIFY_POLICY.value,
        "description": "Modify a governance policy (self-referential protection)",
        "required_approvals": 2,
        "self_approval_allowed": False,
        "execution_delay_seconds": 600,
        "reversibility_window_seconds": 7200,
    },
    {
        "action_type": ActionType.SYSTEM_RECOVERY.value,
        "description": "Emergency system recovery - restore an administrator when all are disabled",
        "required_approvals": 1,
        "self_approval_allowed": True,
        "execution_delay_seconds": 600,
        "reversibility_window_seconds": 3600,
    },
    {
        "action_type": ActionType.DISABLE_AUDIT.value,
        "description": "Disable or modify audit logging configuration",
        "required_approvals": 2,
        "self_approval_allowed": False,
        "execution_delay_seconds": 900,
        "reversibility_window_seconds": 0,
    },
]

# Fields a MODIFY_POLICY delta may touch, and that a reversal restores
MUTABLE_FIELDS = (
    "description",
    "required_approvals",
    "allowed_requestors",
    "allowed_approvers",
    "self_approval_allowed",
    "execution_delay_seconds",
    "reversibility_window_seconds",
    "enabled",
)


class PolicyStore:

    def __init__(self, db: Session):
        self.db = db

    def get(self, action_type) -> Optional[Policy]:
        """The enabled policy for action_type, or None when the action is ungoverned."""
        return self.db.query(Policy).filter(
            Policy.action_type == _key(action_type),
            Policy.enabled.is_(True)
        ).first()

    def get_any(self, action_type) -> Optional[Policy]:
        """The policy for action_type whether or not it is enabled."""
        return self.db.query(Policy).filter(Policy.action_type == _key(action_type)).first()

    def list(self) -> List[Policy]:
        return self.db.query(Policy).order_by(Policy.action_type).all()

    def seed_defaults(self) -> List[str]:
        """
        Insert any missing default policy. Existing rows are never overwritten.

        Returns the action types that were inserted. Safe to run repeatedly and
        concurrently: a concurrent insert of the same action type loses on the
        unique constraint and is treated as already present.
        """
        inserted = []
        for defaults in DEFAULT_POLICIES:
            if self.get_any(defaults["action_type"]) is not None:
                continue
            policy = Policy(
                allowed_requestors=list(_ADMIN_ONLY),
                allowed_approvers=list(_ADMIN_ONLY),
                is_system_default=True,
                enabled=True,
                **defaults
            )
            self.db.add(policy)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                continue
            inserted.append(defaults["action_type"])

        if inserted:
            logger.info("policies_seeded action_types=%s", ",".join(inserted))
        return inserted


def snapshot(policy: Policy) -> Dict[str, Any]:
    return {field: getattr(policy, field) for field in MUTABLE_FIELDS}


def _key(action_type) -> str:
    return action_type.value if isinstance(action_type, ActionType) else str(action_type)
