"""
Tests for the Identity Authority implementations and their selection.

The database-backed authority is what a deployment runs, so its identities and
tokens must outlive the process that issued them.
"""
from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from governance.api.deps import build_identity_authority
from governance.database import build_engine, init_db
from governance.services.identity import (
    DatabaseIdentityAuthority,
    InMemoryIdentityAuthority,
    InvalidCredentials,
    UserAlreadyExists,
    UserNotFound,
)

from tests.conftest import FakeClock


@pytest.fixture
def identity_sessions(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'identity.db'}")
    init_db(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


@pytest.fixture
def authority(identity_sessions, clock):
    return DatabaseIdentityAuthority(identity_sessions, token_ttl_hours=12, clock=clock)


class TestDatabaseIdentityAuthority:

    def test_create_and_look_up_by_email(self, authority):
        user = authority.create_user(" Root@Example.com ", "correct-horse", "Root")

        assert user.email == "root@example.com"
        assert authority.get_user_by_email("ROOT@example.com") == user
        assert authority.get_user_by_email("nobody@example.com") is None

    def test_duplicate_email_is_refused(self, authority):
        authority.create_user("root@example.com", "correct-horse", "Root")

        with pytest.raises(UserAlreadyExists):
            authority.create_user("ROOT@example.com", "other", "Imposter")

    def test_sign_in_and_verify(self, authority):
        user = authority.create_user("root@example.com", "correct-horse", "Root")
        authority.set_role_hint(user.uid, "admin")

        claim = authority.verify_token(authority.sign_in("root@example.com", "correct-horse"))

        assert claim.subject == user.uid
        assert claim.email == "root@example.com"
        assert claim.role_hint == "admin"

    def test_wrong_password_is_refused(self, authority):
        authority.create_user("root@example.com", "correct-horse", "Root")

        with pytest.raises(InvalidCredentials):
            authority.sign_in("root@example.com", "battery-staple")
        with pytest.raises(InvalidCredentials):
            authority.sign_in("nobody@example.com", "correct-horse")

    def test_unknown_token_is_refused(self, authority):
        with pytest.raises(InvalidCredentials):
            authority.verify_token("not-a-token")

    def test_token_expires(self, authority, clock):
        authority.create_user("root@example.com", "correct-horse", "Root")
        token = authority.sign_in("root@example.com", "correct-horse")

        clock.advance(hours=11, minutes=59)
        authority.verify_token(token)
        clock.advance(minutes=1)
        with pytest.raises(InvalidCredentials):
            authority.verify_token(token)

    def test_update_password(self, authority):
        user = authority.create_user("root@example.com", "correct-horse", "Root")

        authority.update_password(user.uid, "battery-staple")

        authority.sign_in("root@example.com", "battery-staple")
        with pytest.raises(InvalidCredentials):
            authority.sign_in("root@example.com", "correct-horse")

    def test_unknown_uid(self, authority):
        with pytest.raises(UserNotFound):
            authority.update_password("missing", "pw")
        with pytest.raises(UserNotFound):
            authority.set_role_hint("missing", "admin")

    def test_identities_and_tokens_survive_a_new_instance(self, authority, identity_sessions):
        user = authority.create_user("root@example.com", "correct-horse", "Root")
        token = authority.sign_in("root@example.com", "correct-horse")

        reopened = DatabaseIdentityAuthority(identity_sessions, clock=FakeClock())

        assert reopened.verify_token(token).subject == user.uid
        assert reopened.get_user_by_email("root@example.com") == user


class TestAuthoritySelection:

    def test_database_authority(self):
        assert isinstance(build_identity_authority("database"), DatabaseIdentityAuthority)

    def test_memory_authority(self):
        assert isinstance(build_identity_authority("memory"), InMemoryIdentityAuthority)

    def test_unknown_authority_is_rejected(self):
        with pytest.raises(ValueError):
            build_identity_authority("ldap")
