"""Enums for the governance engine - the valid values for roles, statuses and action types."""
from enum import Enum


class Role(str, Enum):
    """Roles held on the local account record. The only roles authorization reads."""
    ADMIN = "admin"
    ENGINEER = "engineer"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ActionType(str, Enum):
    """Structurally-governed action types. Each one has a default policy and an executor."""
    DELETE_ADMIN = "DELETE_ADMIN"
    DEMOTE_ADMIN = "DEMOTE_ADMIN"
    DEACTIVATE_ADMIN = "DEACTIVATE_ADMIN"
    MODIFY_POLICY = "MODIFY_POLICY"
    SYSTEM_RECOVERY = "SYSTEM_RECOVERY"
    DISABLE_AUDIT = "DISABLE_AUDIT"


# Action types that can reduce the number of active admins
ADMIN_COUNT_AFFECTING = frozenset({
    ActionType.DELETE_ADMIN,
    ActionType.DEMOTE_ADMIN,
    ActionType.DEACTIVATE_ADMIN,
})


class PendingActionStatus(str, Enum):
    """
    Lifecycle of a pending action.

    pending -> approved -> executed -> reversed
    pending -> vetoed | cancelled | expired
    approved -> vetoed
    """
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    VETOED = "vetoed"
    EXPIRED = "expired"
    REVERSED = "reversed"


OPEN_STATUSES = frozenset({PendingActionStatus.PENDING, PendingActionStatus.APPROVED})

TERMINAL_STATUSES = frozenset({
    PendingActionStatus.EXECUTED,
    PendingActionStatus.CANCELLED,
    PendingActionStatus.VETOED,
    PendingActionStatus.EXPIRED,
    PendingActionStatus.REVERSED,
})
