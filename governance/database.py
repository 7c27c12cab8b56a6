"""
Engine, session factory and declarative base.

DATABASE_URL picks the store. Row locks taken with FOR UPDATE are real only on
PostgreSQL; SQLite serializes writers on the whole file, so a writer waits up
to SQLITE_BUSY_TIMEOUT_SECONDS for the lock instead of failing at once.
"""
import logging
from typing import Any, Dict

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from governance import config

logger = logging.getLogger(__name__)

Base = declarative_base()


def normalize_database_url(url: str) -> str:
    """Hosted Postgres providers hand out postgres://, which SQLAlchemy rejects."""
    if url.startswith("postgres://"):
        return "postgresql://" + url[len("postgres://"):]
    return url


def engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # Sessions cross threads in the API threadpool
        return {"connect_args": {"check_same_thread": False, "timeout": config.SQLITE_BUSY_TIMEOUT_SECONDS}}
    return {
        "pool_pre_ping": True,
        "pool_size": config.DB_POOL_SIZE,
        "max_overflow": config.DB_MAX_OVERFLOW,
    }


def build_engine(url: str) -> Engine:
    url = normalize_database_url(url)
    logger.debug("database_engine dialect=%s", url.split(":", 1)[0])
    return create_engine(url, **engine_options(url))


def init_db(bind: Engine) -> None:
    """Create any missing tables. Models must be imported first to register with Base."""
    Base.metadata.create_all(bind=bind)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Request-scoped session, closed when the response is sent."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
