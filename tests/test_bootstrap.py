"""
Tests for identity bootstrap and admin recovery.

Both flows talk to the Identity Authority and the local store, which fail
independently. Every step must be safe to repeat so a crash between any two
steps converges on the next attempt.
"""
import pytest

from governance.models.audit import AuditAction, AuditEntry
from governance.models.domain import AdminAccount, BOOTSTRAP_LOCK_ID, BootstrapLock, Policy
from governance.models.enums import AccountStatus, Role
from governance.services.bootstrap import IdentityBootstrap
from governance.services.errors import (
    AlreadyBootstrapped,
    InvalidPayload,
    RecoveryMisconfigured,
    RecoveryUnauthorized,
)
from governance.services.identity import InvalidCredentials
from governance.services.lockout_guard import LockoutGuard

from tests.conftest import RECOVERY_TOKEN, audit_actions


@pytest.fixture
def bootstrap(db_session, identity, clock):
    return IdentityBootstrap(db_session, identity, recovery_token=RECOVERY_TOKEN, clock=clock)


def last_entry(db_session):
    return db_session.query(AuditEntry).order_by(AuditEntry.sequence_number.desc()).first()


class TestBootstrap:
    """Test first-admin creation."""

    def test_status_before_bootstrap(self, bootstrap):
        assert bootstrap.status() == {"bootstrapped": False, "initialized": False, "active_admin_count": 0}

    def test_creates_first_admin(self, db_session, bootstrap, identity):
        account = bootstrap.bootstrap("Root@Example.com", "correct-horse", "Root", "10.0.0.1")

        assert account.role == Role.ADMIN
        assert account.status == AccountStatus.ACTIVE
        assert account.email == "root@example.com"
        assert bootstrap.status() == {"bootstrapped": True, "initialized": True, "active_admin_count": 1}

        lock = db_session.get(BootstrapLock, BOOTSTRAP_LOCK_ID)
        assert lock.super_admin_uid == account.identity_uid

        claim = identity.verify_token(identity.sign_in("root@example.com", "correct-horse"))
        assert claim.subject == account.identity_uid
        assert claim.role_hint == "admin"

    def test_seeds_default_policies(self, db_session, bootstrap):
        bootstrap.bootstrap("root@example.com", "correct-horse", "Root")

        assert db_session.query(Policy).count() == 6
        assert audit_actions(db_session) == [AuditAction.POLICIES_SEEDED, AuditAction.BOOTSTRAP_ADMIN_CREATED]

    def test_second_bootstrap_is_refused(self, db_session, bootstrap, identity):
        """
        INVARIANT: Once the lock is set, bootstrap is permanently disabled.
        """
        bootstrap.bootstrap("root@example.com", "correct-horse", "Root")

        with pytest.raises(AlreadyBootstrapped):
            bootstrap.bootstrap("intruder@example.com", "hunter2", "Intruder", "203.0.113.9")

        assert db_session.query(AdminAccount).count() == 1
        assert identity.get_user_by_email("intruder@example.com") is None
        entry = last_entry(db_session)
        assert entry.action == AuditAction.BOOTSTRAP_BLOCKED
        assert entry.ip == "203.0.113.9"

    def test_missing_fields_are_refused(self, bootstrap):
        with pytest.raises(InvalidPayload, match="Email, password, and name are required"):
            bootstrap.bootstrap("root@example.com", "", "Root")

        assert bootstrap.is_bootstrapped() is False

    def test_existing_identity_is_reused(self, db_session, bootstrap, identity):
        """
        Crash after the identity was created: the retry resolves it by email
        instead of creating a second one.
        """
        existing = identity.create_user("root@example.com", "correct-horse", "Root")

        account = bootstrap.bootstrap("root@example.com", "correct-horse", "Root")

        assert account.identity_uid == existing.uid
        assert last_entry(db_session).details["identity_created"] is False

    def test_existing_local_record_is_upserted(self, db_session, bootstrap, identity):
        """
        Crash after the local record was written: the retry updates it in place,
        keyed by the identity's uid.
        """
        user = identity.create_user("root@example.com", "correct-horse", "Root")
        stale = AdminAccount(identity_uid=user.uid, email="old@example.com", name="Old",
                             role=Role.ENGINEER, status=AccountStatus.INACTIVE)
        db_session.add(stale)
        db_session.commit()

        account = bootstrap.bootstrap("root@example.com", "correct-horse", "Root")

        assert account.id == stale.id
        assert account.is_active_admin
        assert account.email == "root@example.com"
        assert db_session.query(AdminAccount).count() == 1

    def test_lock_set_before_seeding_converges(self, db_session, bootstrap):
        """
        Crash after the lock was set but before policies were seeded: the next
        (refused) attempt still seeds them.
        """
        db_session.add(BootstrapLock(id=BOOTSTRAP_LOCK_ID, bootstrapped=True, super_admin_uid="uid-root"))
        db_session.commit()

        with pytest.raises(AlreadyBootstrapped):
            bootstrap.bootstrap("root@example.com", "correct-horse", "Root")

        assert db_session.query(Policy).count() == 6

    def test_concurrent_loser_is_stood_down(self, db_session, bootstrap, monkeypatch):
        """
        Two attempts both pass the lock check; only the one that flips the lock
        keeps an active admin record.
        """
        db_session.add(BootstrapLock(id=BOOTSTRAP_LOCK_ID, bootstrapped=True, super_admin_uid="uid-winner"))
        db_session.commit()
        monkeypatch.setattr(bootstrap, "is_bootstrapped", lambda: False)

        with pytest.raises(AlreadyBootstrapped):
            bootstrap.bootstrap("loser@example.com", "correct-horse", "Loser")

        loser = db_session.query(AdminAccount).filter(AdminAccount.email == "loser@example.com").one()
        assert loser.status == AccountStatus.INACTIVE
        assert db_session.get(BootstrapLock, BOOTSTRAP_LOCK_ID).super_admin_uid == "uid-winner"


class TestRecovery:
    """Test out-of-band admin recovery."""

    def test_unconfigured_token_is_refused(self, db_session, identity, clock):
        bootstrap = IdentityBootstrap(db_session, identity, recovery_token=None, clock=clock)

        with pytest.raises(RecoveryMisconfigured):
            bootstrap.recover("anything", "root@example.com", "correct-horse", "Root", "10.0.0.1")

        assert audit_actions(db_session) == [AuditAction.RECOVERY_REJECTED]

    @pytest.mark.parametrize("token", [None, "", "wrong-token"])
    def test_invalid_token_is_refused_and_audited(self, db_session, bootstrap, token):
        with pytest.raises(RecoveryUnauthorized):
            bootstrap.recover(token, "root@example.com", "correct-horse", "Root", "203.0.113.9")

        entry = last_entry(db_session)
        assert entry.action == AuditAction.RECOVERY_REJECTED
        assert entry.ip == "203.0.113.9"
        assert db_session.query(AdminAccount).count() == 0

    def test_missing_fields_are_refused(self, bootstrap):
        with pytest.raises(InvalidPayload):
            bootstrap.recover(RECOVERY_TOKEN, "root@example.com", None, "Root")

    def test_restores_an_admin_when_all_are_disabled(self, db_session, bootstrap):
        root = bootstrap.bootstrap("root@example.com", "correct-horse", "Root")
        root.status = AccountStatus.INACTIVE
        db_session.commit()
        assert LockoutGuard(db_session).active_admin_count() == 0

        account = bootstrap.recover(RECOVERY_TOKEN, "rescue@example.com", "s3cure-pass", "Rescue")

        assert account.is_active_admin
        assert LockoutGuard(db_session).active_admin_count() == 1
        assert last_entry(db_session).action == AuditAction.ADMIN_RECOVERY_SUCCESS

    def test_recovering_existing_identity_resets_password(self, db_session, bootstrap, identity):
        root = bootstrap.bootstrap("root@example.com", "forgotten", "Root")
        root.status = AccountStatus.INACTIVE
        db_session.commit()

        account = bootstrap.recover(RECOVERY_TOKEN, "root@example.com", "remembered", "Root")

        assert account.id == root.id
        assert account.is_active_admin
        assert identity.sign_in("root@example.com", "remembered")
        with pytest.raises(InvalidCredentials):
            identity.sign_in("root@example.com", "forgotten")

    def test_recovery_is_idempotent(self, db_session, bootstrap):
        first = bootstrap.recover(RECOVERY_TOKEN, "rescue@example.com", "s3cure-pass", "Rescue")
        second = bootstrap.recover(RECOVERY_TOKEN, "rescue@example.com", "s3cure-pass", "Rescue")

        assert first.id == second.id
        assert db_session.query(AdminAccount).count() == 1
