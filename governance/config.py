"""Environment-backed settings.

Values that may be rotated while the service runs (the recovery token) are
read on every call rather than captured at import time.
"""
import os
from typing import List, Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Use PostgreSQL in production, SQLite locally
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./governance.db")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
# Seconds a SQLite writer waits for another writer's lock before failing
SQLITE_BUSY_TIMEOUT_SECONDS = int(os.getenv("SQLITE_BUSY_TIMEOUT_SECONDS", "30"))

# How long a pending action stays open for approval
PENDING_ACTION_TTL_HOURS = int(os.getenv("PENDING_ACTION_TTL_HOURS", "24"))

# "database" persists identities with the governance data; "memory" is for development
IDENTITY_AUTHORITY = os.getenv("IDENTITY_AUTHORITY", "database").strip().lower()
IDENTITY_TOKEN_TTL_HOURS = int(os.getenv("IDENTITY_TOKEN_TTL_HOURS", "12"))


def get_recovery_token() -> Optional[str]:
    """Out-of-band admin recovery secret. Empty means recovery is not configured."""
    token = os.getenv("ADMIN_RECOVERY_TOKEN", "").strip()
    return token or None


def get_cors_origins() -> List[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "*")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]
