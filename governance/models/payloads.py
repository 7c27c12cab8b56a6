"""
Closed set of payload shapes, one per governed action type.

Payloads are validated when a pending action is created, so executors receive
a typed object and never inspect an open-ended blob.
"""
from typing import Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from governance.models.audit import PROTECTED_RESOURCES
from governance.models.enums import ActionType, Role
from governance.services.errors import InvalidPayload


class CamelModel(BaseModel):
    """Snake-case in Python, camelCase on the wire; either is accepted on input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AdminTargetPayload(CamelModel):
    """DELETE_ADMIN and DEACTIVATE_ADMIN."""
    target_account_id: int
    target_email: Optional[str] = None


class DemoteAdminPayload(AdminTargetPayload):
    new_role: Role = Role.ENGINEER

    @field_validator("new_role")
    @classmethod
    def must_leave_admin(cls, value: Role) -> Role:
        if value == Role.ADMIN:
            raise ValueError("new_role must differ from admin")
        return value


class PolicyChanges(CamelModel):
    description: Optional[str] = Field(None, min_length=1)
    required_approvals: Optional[int] = Field(None, ge=1)
    allowed_requestors: Optional[List[Role]] = Field(None, min_length=1)
    allowed_approvers: Optional[List[Role]] = Field(None, min_length=1)
    self_approval_allowed: Optional[bool] = None
    execution_delay_seconds: Optional[int] = Field(None, ge=0)
    reversibility_window_seconds: Optional[int] = Field(None, ge=0)
    enabled: Optional[bool] = None


class PolicyChangePayload(CamelModel):
    """MODIFY_POLICY: a delta against the policy for target_action_type."""
    target_action_type: ActionType
    changes: PolicyChanges

    @model_validator(mode="after")
    def changes_not_empty(self):
        if not self.changes.model_dump(exclude_none=True):
            raise ValueError("changes must set at least one field")
        return self


class SystemRecoveryPayload(CamelModel):
    """SYSTEM_RECOVERY: restore an existing account to an active admin."""
    target_account_id: int


class AuditSuppressionPayload(CamelModel):
    """DISABLE_AUDIT: stop recording entries for the listed resources."""
    resources: List[str] = Field(..., min_length=1)

    @field_validator("resources")
    @classmethod
    def protected_resources_stay_on(cls, value: List[str]) -> List[str]:
        blocked = sorted(set(value) & PROTECTED_RESOURCES)
        if blocked:
            raise ValueError(f"resources cannot be suppressed: {', '.join(blocked)}")
        return sorted(set(value))


PAYLOAD_SCHEMAS: Dict[ActionType, Type[CamelModel]] = {
    ActionType.DELETE_ADMIN: AdminTargetPayload,
    ActionType.DEACTIVATE_ADMIN: AdminTargetPayload,
    ActionType.DEMOTE_ADMIN: DemoteAdminPayload,
    ActionType.MODIFY_POLICY: PolicyChangePayload,
    ActionType.SYSTEM_RECOVERY: SystemRecoveryPayload,
    ActionType.DISABLE_AUDIT: AuditSuppressionPayload,
}


def parse_payload(action_type: ActionType, raw: Optional[dict]) -> CamelModel:
    """
    Validate a raw payload against the schema for its action type.

    Raises InvalidPayload with the validation messages on failure.
    """
    schema = PAYLOAD_SCHEMAS[action_type]
    try:
        return schema.model_validate(raw or {})
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(part) for part in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        ]
        raise InvalidPayload(
            f"Invalid payload for {action_type.value}: {'; '.join(problems)}",
            errors=problems,
        )
