"""Pytest configuration and shared fixtures."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from governance.database import init_db
from governance.models.audit import AuditEntry
from governance.models.domain import AdminAccount, BootstrapLock, LedgerSettings, PendingAction, Policy
from governance.models.enums import AccountStatus, Role
from governance.services.identity import InMemoryIdentityAuthority
from governance.services.policy_store import PolicyStore
from governance.services.workflow import PendingActionWorkflow

RECOVERY_TOKEN = "s3cret-recovery-token"


class FakeClock:
    """Controllable time source. Starts millisecond-aligned."""

    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def engine():
    """In-memory database shared across threads (the API test client uses a threadpool)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create a fresh session for each test."""
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity():
    return InMemoryIdentityAuthority()


@pytest.fixture
def make_account(db_session):
    """Factory for local account records."""
    def _make(name, role=Role.ADMIN, status=AccountStatus.ACTIVE):
        account = AdminAccount(
            identity_uid=f"uid-{name}",
            email=f"{name}@example.com",
            name=name,
            role=role,
            status=status
        )
        db_session.add(account)
        db_session.commit()
        db_session.refresh(account)
        return account
    return _make


@pytest.fixture
def seeded_policies(db_session):
    PolicyStore(db_session).seed_defaults()


@pytest.fixture
def workflow(db_session, clock, seeded_policies):
    return PendingActionWorkflow(db_session, clock)


@pytest.fixture
def admins(make_account):
    """Four active admins: x requests, y is the usual target, z and w approve."""
    return {name: make_account(name) for name in ("x", "y", "z", "w")}


def audit_actions(db_session):
    """Audit action names in sequence order."""
    return [
        entry.action
        for entry in db_session.query(AuditEntry).order_by(AuditEntry.sequence_number).all()
    ]
