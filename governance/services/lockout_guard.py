"""
Lockout guard - the system must never reach zero active administrators.

The count-then-act check is racy against concurrent account changes, so callers
re-run it at request time, at each approval and immediately before execution.
At execution the count is also re-read with the active admin rows locked, after
the executor's changes are flushed, so no execution completes while violating
the minimum.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from governance.models.domain import AdminAccount
from governance.models.enums import AccountStatus, Role

# Structural minimum, not configurable
MIN_ACTIVE_ADMINS = 1


@dataclass(frozen=True)
class SafetyCheck:
    safe: bool
    current_count: int
    would_remove: int
    resulting_count: int


class LockoutGuard:

    def __init__(self, db: Session):
        self.db = db

    def active_admin_count(self, lock: bool = False) -> int:
        """
        Count active admins. With lock=True the counted rows are held FOR UPDATE
        until the transaction ends, so a concurrent removal waits for this one.
        """
        query = self.db.query(AdminAccount.id).filter(
            AdminAccount.role == Role.ADMIN,
            AdminAccount.status == AccountStatus.ACTIVE
        )
        if lock:
            # FOR UPDATE cannot be combined with an aggregate
            return len(query.with_for_update().all())
        return query.count()

    def check_safety(self, target_account_id: Optional[int], lock: bool = False) -> SafetyCheck:
        """
        Would removing target_account_id's admin standing breach the minimum?

        A target that is missing or not an active admin is trivially safe.
        """
        current = self.active_admin_count(lock=lock)
        target = self.db.get(AdminAccount, target_account_id) if target_account_id is not None else None

        if target is None or not target.is_active_admin:
            return SafetyCheck(safe=True, current_count=current, would_remove=0, resulting_count=current)

        resulting = current - 1
        return SafetyCheck(
            safe=resulting >= MIN_ACTIVE_ADMINS,
            current_count=current,
            would_remove=1,
            resulting_count=resulting
        )

    def summary(self) -> dict:
        count = self.active_admin_count()
        return {
            "active_admin_count": count,
            "minimum_required": MIN_ACTIVE_ADMINS,
            "safety_margin": count - MIN_ACTIVE_ADMINS,
            "is_at_minimum": count <= MIN_ACTIVE_ADMINS,
        }
