"""
Hash-chained audit ledger model.

Entries are append-only. Each entry's hash covers its predecessor's hash, so
editing, deleting or reordering any persisted entry is detectable by walking
the chain.
"""
from sqlalchemy import Column, DateTime, Integer, JSON, String
from governance.database import Base

GENESIS_HASH = "GENESIS"


class AuditEntry(Base):
    """
    Immutable, chained audit record.

    Invariants:
    - sequence_number is strictly increasing and gap-free, starting at 1
    - previous_hash equals the entry_hash of sequence_number - 1 (GENESIS for 1)
    - Never updated or deleted by application code
    """
    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    sequence_number = Column(Integer, nullable=False, unique=True, index=True)
    previous_hash = Column(String(64), nullable=False)
    entry_hash = Column(String(64), nullable=False)
    action = Column(String, nullable=False, index=True)  # e.g. "PENDING_ACTION_CREATED"
    resource = Column(String, nullable=False)  # e.g. "GOVERNANCE", "USER"
    resource_id = Column(String, nullable=True, index=True)
    user = Column(String, nullable=True)  # Null for system-initiated events
    details = Column(JSON, nullable=True)
    ip = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)


class AuditResource:
    GOVERNANCE = "GOVERNANCE"
    USER = "USER"


# Resources that can never be suppressed by DISABLE_AUDIT
PROTECTED_RESOURCES = frozenset({AuditResource.GOVERNANCE})


class AuditAction:
    """Audit action names for consistency."""
    # Pending action lifecycle
    PENDING_ACTION_CREATED = "PENDING_ACTION_CREATED"
    PENDING_ACTION_APPROVED = "PENDING_ACTION_APPROVED"
    PENDING_ACTION_VETOED = "PENDING_ACTION_VETOED"
    PENDING_ACTION_CANCELLED = "PENDING_ACTION_CANCELLED"
    PENDING_ACTION_EXPIRED = "PENDING_ACTION_EXPIRED"
    PENDING_ACTIONS_SWEPT = "PENDING_ACTIONS_SWEPT"
    PENDING_ACTION_EXECUTED = "PENDING_ACTION_EXECUTED"
    PENDING_ACTION_REVERSED = "PENDING_ACTION_REVERSED"

    # Refusals that are security events in their own right
    SEPARATION_OF_POWERS_VIOLATION = "SEPARATION_OF_POWERS_VIOLATION"
    LAST_ADMIN_PROTECTION = "LAST_ADMIN_PROTECTION"

    # Policies
    POLICIES_SEEDED = "POLICIES_SEEDED"

    # Bootstrap and recovery
    BOOTSTRAP_ADMIN_CREATED = "BOOTSTRAP_ADMIN_CREATED"
    BOOTSTRAP_BLOCKED = "BOOTSTRAP_BLOCKED"
    BOOTSTRAP_FAILED = "BOOTSTRAP_FAILED"
    ADMIN_RECOVERY_SUCCESS = "ADMIN_RECOVERY_SUCCESS"
    RECOVERY_REJECTED = "RECOVERY_REJECTED"

    # Direct (ungoverned) account changes
    USER_PROMOTED_TO_ADMIN = "USER_PROMOTED_TO_ADMIN"
    USER_ROLE_CHANGED = "USER_ROLE_CHANGED"
    USER_STATUS_CHANGED = "USER_STATUS_CHANGED"
    USER_DELETED = "USER_DELETED"
