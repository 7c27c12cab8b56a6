"""Pydantic schemas for request/response validation. camelCase on the wire."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field

from governance.models.enums import AccountStatus, PendingActionStatus, Role
from governance.models.payloads import CamelModel


class ORMModel(CamelModel):
    model_config = ConfigDict(from_attributes=True)


# Bootstrap and recovery
class StatusResponse(CamelModel):
    bootstrapped: bool
    initialized: bool
    active_admin_count: int


class BootstrapRequest(CamelModel):
    # Optional so missing fields answer 400 from the service, not 422
    email: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None


class RecoveryRequest(BootstrapRequest):
    recovery_token: Optional[str] = None


class AccountResponse(ORMModel):
    id: int
    email: str
    name: str
    role: Role
    status: AccountStatus
    created_at: datetime


class AccountCreatedResponse(CamelModel):
    message: str
    user: AccountResponse


# Policies
class PolicyResponse(ORMModel):
    id: int
    action_type: str
    description: str
    required_approvals: int
    allowed_requestors: List[str]
    allowed_approvers: List[str]
    self_approval_allowed: bool
    execution_delay_seconds: int
    reversibility_window_seconds: int
    is_system_default: bool
    enabled: bool
    updated_at: datetime


# Pending actions
class PendingActionCreate(CamelModel):
    action_type: str = Field(..., min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None


class ApproveRequest(CamelModel):
    comment: Optional[str] = Field(None, max_length=500)


class VetoRequest(CamelModel):
    reason: Optional[str] = None


class ApprovalRecord(CamelModel):
    approver: int
    approved_at: str
    comment: str = ""


class PendingActionResponse(ORMModel):
    id: int
    action_type: str
    status: PendingActionStatus
    requested_by: int
    action_payload: Dict[str, Any]
    reason: str
    required_approvals: int
    approvals: List[ApprovalRecord]
    vetoed_by: Optional[int]
    veto_reason: Optional[str]
    vetoed_at: Optional[datetime]
    approved_at: Optional[datetime]
    scheduled_execution_at: Optional[datetime]
    executed_at: Optional[datetime]
    executed_by: Optional[int]
    execution_result: Optional[Dict[str, Any]]
    reversible_until: Optional[datetime]
    reversed_at: Optional[datetime]
    reversed_by: Optional[int]
    expires_at: datetime
    request_ip: Optional[str]
    created_at: datetime


# Audit
class ChainVerificationResponse(CamelModel):
    valid: bool
    broken_at: Optional[int]
    checked: int


class AuditEntryResponse(ORMModel):
    sequence_number: int
    previous_hash: str
    entry_hash: str
    action: str
    resource: str
    resource_id: Optional[str]
    user: Optional[str]
    details: Optional[Dict[str, Any]]
    ip: Optional[str]
    created_at: datetime


class AdminSafetyResponse(CamelModel):
    active_admin_count: int
    minimum_required: int
    safety_margin: int
    is_at_minimum: bool


# Accounts
class LoginRequest(CamelModel):
    email: str
    password: str


class LoginResponse(CamelModel):
    token: str
    user: AccountResponse


class AccountUpdate(CamelModel):
    role: Optional[Role] = None
    status: Optional[AccountStatus] = None


class PendingApprovalResponse(CamelModel):
    """Returned when a change was redirected into a pending action."""
    message: str
    code: str = "PENDING_APPROVAL"
    pending_action_id: int


class AdminCountResponse(CamelModel):
    admin_count: int


class MessageResponse(CamelModel):
    message: str
