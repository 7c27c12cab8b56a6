"""Tests for the minimum-active-admin guard."""
from governance.models.enums import AccountStatus, Role
from governance.services.lockout_guard import LockoutGuard, MIN_ACTIVE_ADMINS


class TestActiveAdminCount:

    def test_counts_only_active_admins(self, db_session, make_account):
        make_account("a")
        make_account("b")
        make_account("retired", status=AccountStatus.INACTIVE)
        make_account("eng", role=Role.ENGINEER)

        assert LockoutGuard(db_session).active_admin_count() == 2


class TestCheckSafety:
    """
    INVARIANT: No check may report safe when removing the target leaves
    fewer than MIN_ACTIVE_ADMINS active admins.
    """

    def test_last_admin_is_unsafe(self, db_session, make_account):
        only = make_account("only")

        check = LockoutGuard(db_session).check_safety(only.id)
        assert check.safe is False
        assert check.current_count == 1
        assert check.would_remove == 1
        assert check.resulting_count == 0

    def test_second_to_last_admin_is_safe(self, db_session, make_account):
        a = make_account("a")
        make_account("b")

        check = LockoutGuard(db_session).check_safety(a.id)
        assert check.safe is True
        assert check.resulting_count == MIN_ACTIVE_ADMINS

    def test_non_admin_target_is_trivially_safe(self, db_session, make_account):
        make_account("only")
        eng = make_account("eng", role=Role.ENGINEER)

        check = LockoutGuard(db_session).check_safety(eng.id)
        assert check.safe is True
        assert check.would_remove == 0
        assert check.resulting_count == 1

    def test_inactive_admin_target_is_trivially_safe(self, db_session, make_account):
        make_account("only")
        retired = make_account("retired", status=AccountStatus.INACTIVE)

        assert LockoutGuard(db_session).check_safety(retired.id).safe is True

    def test_missing_target_is_trivially_safe(self, db_session, make_account):
        make_account("only")

        assert LockoutGuard(db_session).check_safety(9999).safe is True


class TestSummary:

    def test_summary_at_minimum(self, db_session, make_account):
        make_account("only")

        assert LockoutGuard(db_session).summary() == {
            "active_admin_count": 1,
            "minimum_required": 1,
            "safety_margin": 0,
            "is_at_minimum": True,
        }

    def test_summary_with_margin(self, db_session, make_account):
        for name in ("a", "b", "c"):
            make_account(name)

        summary = LockoutGuard(db_session).summary()
        assert summary["safety_margin"] == 2
        assert summary["is_at_minimum"] is False
