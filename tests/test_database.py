"""Tests for engine construction and schema creation."""
from sqlalchemy import inspect

from governance.database import build_engine, engine_options, init_db, normalize_database_url
from governance.models import audit, domain, identity  # noqa: F401  registers every table


class TestDatabaseUrl:

    def test_postgres_scheme_is_rewritten(self):
        assert normalize_database_url("postgres://u:p@db:5432/gov") == "postgresql://u:p@db:5432/gov"

    def test_other_urls_are_untouched(self):
        assert normalize_database_url("postgresql://u:p@db/gov") == "postgresql://u:p@db/gov"
        assert normalize_database_url("sqlite:///./governance.db") == "sqlite:///./governance.db"


class TestEngineOptions:

    def test_sqlite_allows_cross_thread_sessions_and_waits_for_writers(self):
        options = engine_options("sqlite:///./governance.db")

        assert options["connect_args"]["check_same_thread"] is False
        assert options["connect_args"]["timeout"] > 0
        assert "pool_size" not in options

    def test_server_databases_get_a_checked_pool(self):
        options = engine_options("postgresql://u:p@db/gov")

        assert options["pool_pre_ping"] is True
        assert options["pool_size"] >= 1
        assert "connect_args" not in options


def test_init_db_creates_every_table(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'fresh.db'}")
    try:
        init_db(engine)
        init_db(engine)

        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()

    assert {
        "governance_policies",
        "pending_actions",
        "audit_entries",
        "accounts",
        "bootstrap_lock",
        "identity_users",
        "identity_tokens",
    } <= tables
