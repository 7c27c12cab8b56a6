"""
Governance refusals.

These are not faults - they are the engine working correctly. Each carries a
stable code, an HTTP-equivalent status and structured context so the caller can
decide whether to retry, escalate or abandon.
"""
from typing import Any, Dict

from pydantic.alias_generators import to_camel


class GovernanceError(Exception):
    """Base error for the governance engine."""
    code = "GOVERNANCE_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: Dict[str, Any] = context
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, Any]:
        detail = {"message": self.message, "code": self.code}
        detail.update({to_camel(key): value for key, value in self.context.items()})
        return detail


class PolicyNotFound(GovernanceError):
    """The action type is ungoverned (no enabled policy)."""
    code = "POLICY_NOT_FOUND"


class PermissionDenied(GovernanceError):
    """The principal's role is not in the policy's allowed set."""
    code = "PERMISSION_DENIED"


class SeparationOfPowersViolation(GovernanceError):
    """Requestor tried to approve their own request without a policy waiver."""
    code = "SEPARATION_OF_POWERS"


class DuplicateApproval(GovernanceError):
    code = "DUPLICATE_APPROVAL"


class InvalidStateTransition(GovernanceError):
    """The action's current status does not allow the requested operation."""
    code = "INVALID_STATE"


class Expired(GovernanceError):
    code = "EXPIRED"


class LockoutViolation(GovernanceError):
    """The operation would leave fewer active admins than the structural minimum."""
    code = "LAST_ADMIN_PROTECTION"


class ExecutionNotReady(GovernanceError):
    """Execution was requested before the policy's execution delay elapsed."""
    code = "EXECUTION_DELAY_ACTIVE"


class ReversalNotAllowed(GovernanceError):
    code = "REVERSAL_NOT_ALLOWED"


class InvalidPayload(GovernanceError):
    code = "INVALID_PAYLOAD"


class ActionNotFound(GovernanceError):
    code = "NOT_FOUND"
    status_code = 404


class ConcurrentModification(GovernanceError):
    """Another writer changed the record first. Nothing was written; retry."""
    code = "CONCURRENT_MODIFICATION"
    status_code = 409


class RecoveryMisconfigured(GovernanceError):
    code = "RECOVERY_NOT_CONFIGURED"
    status_code = 503


class RecoveryUnauthorized(GovernanceError):
    code = "INVALID_RECOVERY_TOKEN"
    status_code = 401


class AlreadyBootstrapped(GovernanceError):
    """Permanent: the bootstrap lock is set and will never be cleared."""
    code = "ALREADY_BOOTSTRAPPED"
    status_code = 409
