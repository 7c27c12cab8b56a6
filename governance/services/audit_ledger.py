"""
Append-only, hash-chained audit ledger.

This is the only code path that writes AuditEntry rows.

Availability trade-off: append() never raises. A ledger write failure is logged
at WARNING (the monitoring hook) and returns None, so an audit-store outage does
not block governance operations. Governance correctness does not depend on the
ledger; audit completeness does, and is sacrificed during such an outage.
"""
import hashlib
import json
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from governance.models.audit import AuditEntry, GENESIS_HASH, PROTECTED_RESOURCES
from governance.models.domain import LEDGER_SETTINGS_ID, LedgerSettings
from governance.services.clock import Clock, to_iso, truncate_to_millis, utcnow

logger = logging.getLogger(__name__)

# Serializes "read tail, compute next, write" within this process. Writers in
# other processes are caught by the unique sequence_number and retried.
_append_lock = threading.Lock()
MAX_APPEND_ATTEMPTS = 3


def canonical_details(details: Optional[Dict[str, Any]]) -> str:
    return json.dumps(details if details is not None else {}, sort_keys=True, separators=(",", ":"), default=str)


def compute_entry_hash(
    previous_hash: str,
    action: str,
    resource: str,
    resource_id: Optional[str],
    user: Optional[str],
    details: Optional[Dict[str, Any]],
    ip: Optional[str],
    created_at,
    sequence_number: int
) -> str:
    """
    SHA-256 over the pipe-joined fields, hex-encoded.

    Field order is fixed: previousHash | action | resource | resourceId |
    user-or-SYSTEM | json(details) | ip | createdAt | sequenceNumber
    """
    parts = [
        previous_hash,
        action,
        resource,
        resource_id or "",
        user if user is not None else "SYSTEM",
        canonical_details(details),
        ip or "",
        to_iso(created_at),
        str(sequence_number),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def hash_of(entry: AuditEntry) -> str:
    return compute_entry_hash(
        entry.previous_hash,
        entry.action,
        entry.resource,
        entry.resource_id,
        entry.user,
        entry.details,
        entry.ip,
        entry.created_at,
        entry.sequence_number,
    )


@dataclass(frozen=True)
class ChainVerification:
    valid: bool
    broken_at: Optional[int]
    checked: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLedger:
    """Writes and verifies the audit chain through the caller's session."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def append(
        self,
        action: str,
        resource: str,
        details: Optional[Dict[str, Any]] = None,
        ip: Optional[str] = None,
        user: Optional[Any] = None,
        resource_id: Optional[Any] = None
    ) -> Optional[AuditEntry]:
        """
        Append one entry to the chain and commit it.

        Callers commit their own state change first; a failed append rolls back
        only the audit row. Returns None when the write failed or the resource is
        suppressed.
        """
        try:
            if self._is_suppressed(resource):
                logger.debug("audit_append_suppressed action=%s resource=%s", action, resource)
                return None
            with _append_lock:
                for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
                    try:
                        return self._write_entry(action, resource, details, ip, user, resource_id)
                    except IntegrityError:
                        # Another process took this sequence number; re-read the tail
                        self.db.rollback()
                        if attempt == MAX_APPEND_ATTEMPTS:
                            raise
                        logger.info("audit_sequence_conflict action=%s attempt=%s", action, attempt)
        except (SQLAlchemyError, TypeError, ValueError) as exc:
            self.db.rollback()
            logger.warning("audit_append_failed action=%s resource=%s", action, resource, exc_info=exc)
        return None

    def _write_entry(self, action, resource, details, ip, user, resource_id) -> AuditEntry:
        last = self.db.query(AuditEntry).order_by(AuditEntry.sequence_number.desc()).first()
        sequence_number = last.sequence_number + 1 if last else 1
        previous_hash = last.entry_hash if last else GENESIS_HASH

        # Store exactly what gets hashed
        stored_details = json.loads(canonical_details(details))
        entry = AuditEntry(
            sequence_number=sequence_number,
            previous_hash=previous_hash,
            action=action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            user=str(user) if user is not None else None,
            details=stored_details,
            ip=ip,
            created_at=truncate_to_millis(self.clock()),
        )
        entry.entry_hash = hash_of(entry)
        self.db.add(entry)
        self.db.commit()
        self.db.refresh(entry)
        return entry

    def _is_suppressed(self, resource: str) -> bool:
        if resource in PROTECTED_RESOURCES:
            return False
        settings = self.db.get(LedgerSettings, LEDGER_SETTINGS_ID)
        return bool(settings and resource in (settings.suppressed_resources or []))

    def verify(self, limit: int = 1000) -> ChainVerification:
        """
        Walk the chain from sequence 1, stopping at the first offending entry.

        An entry offends when its sequence number is out of place, its
        previous_hash does not match the running hash, or its stored hash does
        not match the recomputed one.
        """
        entries = (
            self.db.query(AuditEntry)
            .order_by(AuditEntry.sequence_number.asc())
            .limit(limit)
            .all()
        )

        running_hash = GENESIS_HASH
        for checked, entry in enumerate(entries, start=1):
            if (
                entry.sequence_number != checked
                or entry.previous_hash != running_hash
                or entry.entry_hash != hash_of(entry)
            ):
                logger.warning("audit_chain_broken sequence_number=%s", entry.sequence_number)
                return ChainVerification(valid=False, broken_at=entry.sequence_number, checked=checked)
            running_hash = entry.entry_hash

        return ChainVerification(valid=True, broken_at=None, checked=len(entries))

    def recent(self, limit: int = 200) -> List[AuditEntry]:
        return (
            self.db.query(AuditEntry)
            .order_by(AuditEntry.sequence_number.desc())
            .limit(limit)
            .all()
        )
