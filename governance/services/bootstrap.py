"""
Identity bootstrap and recovery of privileged accounts.

The Identity Authority and the local record store fail independently, so both
flows are built from steps that are each safe to repeat:

1. resolve-or-create the identity by email (never create blindly)
2. upsert the local admin record keyed by the identity's stable uid (never by email)
3. a flow-specific side effect (bootstrap: set the lock, then seed policies)

A crash between any two steps converges on the next attempt, because every
write is either an upsert by stable key or a no-op when already done.
"""
import hmac
import logging
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from governance.models.audit import AuditAction, AuditResource
from governance.models.domain import AdminAccount, BOOTSTRAP_LOCK_ID, BootstrapLock
from governance.models.enums import AccountStatus, Role
from governance.services.audit_ledger import AuditLedger
from governance.services.clock import Clock, utcnow
from governance.services.errors import (
    AlreadyBootstrapped,
    InvalidPayload,
    RecoveryMisconfigured,
    RecoveryUnauthorized,
)
from governance.services.identity import IdentityAuthority, IdentityError, IdentityUser, UserAlreadyExists
from governance.services.lockout_guard import LockoutGuard
from governance.services.policy_store import PolicyStore

logger = logging.getLogger(__name__)


class IdentityBootstrap:

    def __init__(
        self,
        db: Session,
        identity: IdentityAuthority,
        recovery_token: Optional[str] = None,
        clock: Clock = utcnow,
        ledger: Optional[AuditLedger] = None
    ):
        self.db = db
        self.identity = identity
        self.recovery_token = recovery_token
        self.clock = clock
        self.ledger = ledger or AuditLedger(db, clock)
        self.policies = PolicyStore(db)

    def is_bootstrapped(self) -> bool:
        lock = self.db.get(BootstrapLock, BOOTSTRAP_LOCK_ID)
        return bool(lock and lock.bootstrapped)

    def status(self) -> dict:
        active_admins = LockoutGuard(self.db).active_admin_count()
        return {
            "bootstrapped": self.is_bootstrapped(),
            "initialized": active_admins > 0,
            "active_admin_count": active_admins,
        }

    def bootstrap(self, email: Optional[str], password: Optional[str], name: Optional[str],
                  ip: Optional[str] = None) -> AdminAccount:
        """
        Create the first administrator. Permanently disabled once the lock is set.
        """
        if self.is_bootstrapped():
            # Converge a crash that happened between setting the lock and seeding
            self.policies.seed_defaults()
            self.ledger.append(
                AuditAction.BOOTSTRAP_BLOCKED,
                AuditResource.GOVERNANCE,
                {"reason": "System already initialized", "email": email},
                ip
            )
            logger.warning("bootstrap_blocked email=%s ip=%s", email, ip)
            raise AlreadyBootstrapped("System already initialized. Bootstrap is permanently disabled.")

        _require_fields(email, password, name)

        try:
            user, identity_created = self.resolve_or_create(email, password, name)
            self.identity.set_role_hint(user.uid, Role.ADMIN.value)
        except IdentityError as exc:
            self.ledger.append(
                AuditAction.BOOTSTRAP_FAILED,
                AuditResource.GOVERNANCE,
                {"error": str(exc), "email": email},
                ip
            )
            logger.warning("bootstrap_identity_failed email=%s", email, exc_info=exc)
            raise

        account = self.upsert_admin(user, name)

        if not self._acquire_lock(user.uid):
            # A concurrent bootstrap won with a different identity; stand this one down
            lock = self.db.get(BootstrapLock, BOOTSTRAP_LOCK_ID)
            if lock.super_admin_uid != user.uid:
                account.status = AccountStatus.INACTIVE
                self.db.commit()
            self.ledger.append(
                AuditAction.BOOTSTRAP_BLOCKED,
                AuditResource.GOVERNANCE,
                {"reason": "Lost concurrent bootstrap", "email": email},
                ip
            )
            raise AlreadyBootstrapped("System already initialized. Bootstrap is permanently disabled.")

        seeded = self.policies.seed_defaults()
        if seeded:
            self.ledger.append(
                AuditAction.POLICIES_SEEDED,
                AuditResource.GOVERNANCE,
                {"action_types": seeded},
                ip
            )

        self.ledger.append(
            AuditAction.BOOTSTRAP_ADMIN_CREATED,
            AuditResource.GOVERNANCE,
            {
                "account_id": account.id,
                "email": account.email,
                "name": account.name,
                "identity_created": identity_created,
            },
            ip,
            user=account.id,
            resource_id=account.id
        )
        logger.info("bootstrap_completed account=%s", account.id)
        return account

    def recover(self, recovery_token: Optional[str], email: Optional[str], password: Optional[str],
                name: Optional[str], ip: Optional[str] = None) -> AdminAccount:
        """
        Restore an administrator using the out-of-band recovery secret.

        Not governed by policy: it must work when every admin is disabled.
        Every attempt is audit-logged with the source ip.
        """
        if not self.recovery_token:
            self._reject_recovery("Recovery token not configured", email, ip)
            raise RecoveryMisconfigured("Admin recovery is not configured")

        if not recovery_token or not hmac.compare_digest(
            recovery_token.encode("utf-8"), self.recovery_token.encode("utf-8")
        ):
            self._reject_recovery("Invalid recovery token", email, ip)
            raise RecoveryUnauthorized("Invalid recovery token")

        try:
            _require_fields(email, password, name)
        except InvalidPayload:
            self._reject_recovery("Missing fields", email, ip)
            raise

        try:
            user, identity_created = self.resolve_or_create(email, password, name)
            if not identity_created:
                # Regaining access is the point of recovery
                self.identity.update_password(user.uid, password)
            self.identity.set_role_hint(user.uid, Role.ADMIN.value)
        except IdentityError as exc:
            self._reject_recovery(str(exc), email, ip)
            raise

        account = self.upsert_admin(user, name)
        self.ledger.append(
            AuditAction.ADMIN_RECOVERY_SUCCESS,
            AuditResource.GOVERNANCE,
            {
                "account_id": account.id,
                "email": account.email,
                "name": account.name,
                "identity_created": identity_created,
            },
            ip,
            user=account.id,
            resource_id=account.id
        )
        logger.warning("admin_recovery_succeeded account=%s ip=%s", account.id, ip)
        return account

    def resolve_or_create(self, email: str, password: str, name: str) -> Tuple[IdentityUser, bool]:
        """Look the identity up by email and create it only when absent."""
        existing = self.identity.get_user_by_email(email)
        if existing is not None:
            return existing, False
        try:
            return self.identity.create_user(email, password, name), True
        except UserAlreadyExists:
            # Created between lookup and create by a concurrent attempt
            existing = self.identity.get_user_by_email(email)
            if existing is None:
                raise
            return existing, False

    def upsert_admin(self, user: IdentityUser, name: str) -> AdminAccount:
        """Insert or update the local record keyed by the identity's stable uid."""
        account = self._account_for(user.uid)
        if account is None:
            self.db.add(AdminAccount(
                identity_uid=user.uid,
                email=user.email,
                name=name,
                role=Role.ADMIN,
                status=AccountStatus.ACTIVE
            ))
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
            account = self._account_for(user.uid)

        account.email = user.email
        account.name = name
        account.role = Role.ADMIN
        account.status = AccountStatus.ACTIVE
        self.db.commit()
        self.db.refresh(account)
        return account

    def _account_for(self, uid: str) -> Optional[AdminAccount]:
        return self.db.query(AdminAccount).filter(AdminAccount.identity_uid == uid).first()

    def _acquire_lock(self, uid: str) -> bool:
        """Flip the lock from unset to set. False when another attempt already set it."""
        if self.db.get(BootstrapLock, BOOTSTRAP_LOCK_ID) is None:
            self.db.add(BootstrapLock(id=BOOTSTRAP_LOCK_ID, bootstrapped=False))
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()

        updated = self.db.query(BootstrapLock).filter(
            BootstrapLock.id == BOOTSTRAP_LOCK_ID,
            BootstrapLock.bootstrapped.is_(False)
        ).update(
            {
                BootstrapLock.bootstrapped: True,
                BootstrapLock.super_admin_uid: uid,
                BootstrapLock.bootstrapped_at: self.clock(),
            },
            synchronize_session=False
        )
        self.db.commit()
        return updated == 1

    def _reject_recovery(self, reason: str, email: Optional[str], ip: Optional[str]) -> None:
        self.ledger.append(
            AuditAction.RECOVERY_REJECTED,
            AuditResource.GOVERNANCE,
            {"reason": reason, "email": email},
            ip
        )
        logger.warning("admin_recovery_rejected reason=%s ip=%s", reason, ip)


def _require_fields(email, password, name) -> None:
    if not email or not password or not name:
        raise InvalidPayload("Email, password, and name are required")
