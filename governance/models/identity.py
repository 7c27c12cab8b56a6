"""Credential tables for the database-backed Identity Authority.

Nothing in the governance workflow reads these; authorization always goes
through AdminAccount.
"""
from sqlalchemy import Column, DateTime, ForeignKey, LargeBinary, String
from governance.database import Base
from governance.services.clock import utcnow


class IdentityRecord(Base):
    __tablename__ = "identity_users"

    uid = Column(String, primary_key=True)  # Stable subject id; never reassigned
    email = Column(String, nullable=False, unique=True, index=True)  # Stored lower-cased
    display_name = Column(String, nullable=False)
    salt = Column(LargeBinary, nullable=False)
    password_hash = Column(LargeBinary, nullable=False)
    role_hint = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class IdentityToken(Base):
    """An issued bearer token. Only its SHA-256 digest is stored."""
    __tablename__ = "identity_tokens"

    token_hash = Column(String, primary_key=True)
    uid = Column(String, ForeignKey("identity_users.uid"), nullable=False, index=True)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
