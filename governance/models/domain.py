"""Domain models - policies, pending actions, accounts and the bootstrap lock."""
from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Enum as SQLEnum
from governance.database import Base
from governance.models.enums import AccountStatus, PendingActionStatus, Role
from governance.services.clock import utcnow


class Policy(Base):
    """
    One policy per governed action type.

    Invariants:
    - action_type is unique
    - required_approvals >= 1, delays >= 0
    - System default policies are never deleted; mutation flows through MODIFY_POLICY
    """
    __tablename__ = "governance_policies"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    action_type = Column(String, nullable=False, unique=True, index=True)
    description = Column(String, nullable=False)
    required_approvals = Column(Integer, nullable=False, default=2)
    allowed_requestors = Column(JSON, nullable=False, default=lambda: ["admin"])
    allowed_approvers = Column(JSON, nullable=False, default=lambda: ["admin"])
    self_approval_allowed = Column(Boolean, nullable=False, default=False)
    execution_delay_seconds = Column(Integer, nullable=False, default=300)
    reversibility_window_seconds = Column(Integer, nullable=False, default=3600)
    is_system_default = Column(Boolean, nullable=False, default=False)
    enabled = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PendingAction(Base):
    """
    A staged governed action awaiting (or past) multi-party approval.

    Invariants:
    - required_approvals is a snapshot of the policy at creation time
    - approvals holds distinct approvers only
    - Status moves forward only; never back to pending
    - Never deleted (audit retention)

    The version column is checked on every update, so two writers that read the
    same state cannot both commit.
    """
    __tablename__ = "pending_actions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    version = Column(Integer, nullable=False)
    action_type = Column(String, nullable=False, index=True)
    status = Column(SQLEnum(PendingActionStatus), nullable=False, default=PendingActionStatus.PENDING, index=True)
    requested_by = Column(Integer, nullable=False)  # No FK: the requestor may later be deleted
    action_payload = Column(JSON, nullable=False)
    reason = Column(String, nullable=False)
    required_approvals = Column(Integer, nullable=False)

    # [{"approver": int, "approved_at": iso str, "comment": str}, ...]
    approvals = Column(JSON, nullable=False, default=list)

    vetoed_by = Column(Integer, nullable=True)
    veto_reason = Column(String, nullable=True)
    vetoed_at = Column(DateTime, nullable=True)

    approved_at = Column(DateTime, nullable=True)
    scheduled_execution_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    executed_by = Column(Integer, nullable=True)
    execution_result = Column(JSON, nullable=True)  # Snapshot used for reversal

    reversible_until = Column(DateTime, nullable=True)
    reversed_at = Column(DateTime, nullable=True)
    reversed_by = Column(Integer, nullable=True)

    expires_at = Column(DateTime, nullable=False, index=True)
    request_ip = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    def approver_ids(self):
        return [entry["approver"] for entry in self.approvals or []]

    def has_approved(self, account_id: int) -> bool:
        return account_id in self.approver_ids()

    def has_quorum(self) -> bool:
        return len(self.approvals or []) >= self.required_approvals


class AdminAccount(Base):
    """
    Local authorization record for a principal.

    This is the only source of role/status that authorization decisions read.
    The Identity Authority's own role hint is descriptive and never merged in here
    except by IdentityBootstrap.
    """
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    identity_uid = Column(String, nullable=False, unique=True, index=True)  # Stable subject id
    email = Column(String, nullable=False)
    name = Column(String, nullable=False)
    role = Column(SQLEnum(Role), nullable=False, default=Role.ENGINEER)
    status = Column(SQLEnum(AccountStatus), nullable=False, default=AccountStatus.ACTIVE)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_active_admin(self) -> bool:
        return self.role == Role.ADMIN and self.status == AccountStatus.ACTIVE


BOOTSTRAP_LOCK_ID = "bootstrap"


class BootstrapLock(Base):
    """
    Singleton that records whether the system has been initialized.

    Invariant: once bootstrapped is true it stays true. This row, not the
    presence of any identity-provider account, decides initialization.
    """
    __tablename__ = "bootstrap_lock"

    id = Column(String, primary_key=True, default=BOOTSTRAP_LOCK_ID)
    bootstrapped = Column(Boolean, nullable=False, default=False)
    super_admin_uid = Column(String, nullable=True)
    bootstrapped_at = Column(DateTime, nullable=True)


LEDGER_SETTINGS_ID = "ledger"


class LedgerSettings(Base):
    """Singleton holding audit resources suppressed through DISABLE_AUDIT."""
    __tablename__ = "ledger_settings"

    id = Column(String, primary_key=True, default=LEDGER_SETTINGS_ID)
    suppressed_resources = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
