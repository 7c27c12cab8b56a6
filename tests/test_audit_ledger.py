"""
Tests for the hash-chained audit ledger.

The chain must detect any modification, deletion or reordering of entries,
and a failing ledger write must never break the operation that logged it.
"""
import hashlib

import pytest
from sqlalchemy.exc import SQLAlchemyError

from governance.models.audit import AuditEntry, AuditResource, GENESIS_HASH
from governance.models.domain import LEDGER_SETTINGS_ID, LedgerSettings
from governance.services.audit_ledger import AuditLedger, ChainVerification, hash_of


def _entry(db_session, sequence_number):
    return db_session.query(AuditEntry).filter(AuditEntry.sequence_number == sequence_number).one()


@pytest.fixture
def ledger(db_session, clock):
    return AuditLedger(db_session, clock)


class TestChainIntegrity:
    """Test chain construction and verification."""

    def test_empty_ledger_verifies(self, ledger):
        assert ledger.verify() == ChainVerification(valid=True, broken_at=None, checked=0)

    def test_first_entry_chains_from_genesis(self, ledger):
        """
        INVARIANT: Entry 1's previous hash is the literal GENESIS.
        """
        entry = ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": 1})

        assert entry.sequence_number == 1
        assert entry.previous_hash == GENESIS_HASH

    def test_each_entry_links_to_its_predecessor(self, ledger):
        """
        INVARIANT: Entry N's previous hash is entry N-1's hash, sequence numbers are gap-free.
        """
        entries = [ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": n}) for n in range(5)]

        assert [e.sequence_number for e in entries] == [1, 2, 3, 4, 5]
        for previous, current in zip(entries, entries[1:]):
            assert current.previous_hash == previous.entry_hash

        assert ledger.verify() == ChainVerification(valid=True, broken_at=None, checked=5)

    def test_modified_details_break_the_chain(self, db_session, ledger):
        """
        INVARIANT: Any field change after the fact is detected at that entry.
        """
        for n in range(3):
            ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": n})

        tampered = _entry(db_session, 2)
        tampered.details = {"n": 99}
        db_session.commit()

        result = ledger.verify()
        assert result.valid is False
        assert result.broken_at == 2

    def test_modified_action_breaks_the_chain(self, db_session, ledger):
        for n in range(3):
            ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": n})

        tampered = _entry(db_session, 3)
        tampered.action = "SOMETHING_ELSE"
        db_session.commit()

        assert ledger.verify().broken_at == 3

    def test_deleted_entry_breaks_the_chain(self, db_session, ledger):
        """
        INVARIANT: Deleting an entry is detected at the first entry after the gap.
        """
        for n in range(4):
            ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": n})

        db_session.delete(_entry(db_session, 2))
        db_session.commit()

        result = ledger.verify()
        assert result.valid is False
        assert result.broken_at == 3

    def test_rehashed_entry_still_breaks_its_successor(self, db_session, ledger):
        """
        INVARIANT: Recomputing a tampered entry's own hash does not hide it; the next link breaks.
        """
        for n in range(3):
            ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": n})

        tampered = _entry(db_session, 2)
        tampered.details = {"n": 99}
        tampered.entry_hash = hash_of(tampered)
        db_session.commit()

        assert ledger.verify().broken_at == 3

    def test_verify_respects_limit(self, ledger):
        for n in range(5):
            ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": n})

        assert ledger.verify(limit=2) == ChainVerification(valid=True, broken_at=None, checked=2)

    def test_recent_is_newest_first(self, ledger):
        for n in range(3):
            ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": n})

        assert [e.sequence_number for e in ledger.recent(2)] == [3, 2]


class TestHashFormat:
    """The hash input layout is fixed so external tools can verify the chain."""

    def test_hash_covers_fields_in_documented_order(self, ledger):
        entry = ledger.append(
            "PENDING_ACTION_CREATED",
            AuditResource.GOVERNANCE,
            {"b": 1, "a": "x"},
            "10.0.0.1",
            user=7,
            resource_id=42
        )

        expected_input = (
            'GENESIS|PENDING_ACTION_CREATED|GOVERNANCE|42|7|{"a":"x","b":1}'
            "|10.0.0.1|2024-01-01T12:00:00.000Z|1"
        )
        assert entry.entry_hash == hashlib.sha256(expected_input.encode("utf-8")).hexdigest()

    def test_missing_user_is_hashed_as_system(self, ledger):
        entry = ledger.append("PENDING_ACTIONS_SWEPT", AuditResource.GOVERNANCE, {"expired_count": 2})

        expected_input = 'GENESIS|PENDING_ACTIONS_SWEPT|GOVERNANCE||SYSTEM|{"expired_count":2}||2024-01-01T12:00:00.000Z|1'
        assert entry.entry_hash == hashlib.sha256(expected_input.encode("utf-8")).hexdigest()
        assert entry.user is None

    def test_timestamps_come_from_the_clock(self, ledger, clock):
        clock.advance(seconds=90)
        entry = ledger.append("TEST_EVENT", AuditResource.GOVERNANCE)

        assert entry.created_at == clock()


class TestFailureIsolation:
    """Ledger failures are logged and swallowed."""

    def test_failed_write_returns_none(self, db_session, ledger, monkeypatch):
        """
        INVARIANT: A ledger write failure never raises to the caller.
        """
        def failing_commit():
            raise SQLAlchemyError("audit store unavailable")

        monkeypatch.setattr(db_session, "commit", failing_commit)
        assert ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": 1}) is None
        monkeypatch.undo()

        assert db_session.query(AuditEntry).count() == 0

    def test_chain_continues_after_a_failed_write(self, db_session, ledger, monkeypatch):
        ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": 1})

        def failing_commit():
            raise SQLAlchemyError("audit store unavailable")

        monkeypatch.setattr(db_session, "commit", failing_commit)
        ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": 2})
        monkeypatch.undo()

        entry = ledger.append("TEST_EVENT", AuditResource.GOVERNANCE, {"n": 3})
        assert entry.sequence_number == 2
        assert ledger.verify().valid is True


class TestSuppression:
    """Resources suppressed through DISABLE_AUDIT are skipped; governance events never are."""

    def test_suppressed_resource_is_not_written(self, db_session, ledger):
        db_session.add(LedgerSettings(id=LEDGER_SETTINGS_ID, suppressed_resources=[AuditResource.USER]))
        db_session.commit()

        assert ledger.append("USER_ROLE_CHANGED", AuditResource.USER, {"to": "admin"}) is None
        assert db_session.query(AuditEntry).count() == 0

    def test_governance_events_ignore_suppression(self, db_session, ledger):
        """
        INVARIANT: Governance events cannot be silenced.
        """
        db_session.add(LedgerSettings(
            id=LEDGER_SETTINGS_ID,
            suppressed_resources=[AuditResource.USER, AuditResource.GOVERNANCE]
        ))
        db_session.commit()

        entry = ledger.append("PENDING_ACTION_CREATED", AuditResource.GOVERNANCE, {"action_id": 1})
        assert entry is not None
