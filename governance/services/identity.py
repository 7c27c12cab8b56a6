"""
Identity Authority interface.

The Identity Authority authenticates principals and stores a role hint. That
hint is an IdentityClaim - descriptive only. Authorization reads the local
AdminAccount record exclusively; the two are reconciled only by IdentityBootstrap.

DatabaseIdentityAuthority is the deployed implementation. InMemoryIdentityAuthority
is process-local and meant for development and tests.
"""
import hashlib
import hmac
import secrets
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from governance.config import IDENTITY_TOKEN_TTL_HOURS
from governance.models.identity import IdentityRecord, IdentityToken
from governance.services.clock import Clock, utcnow


class IdentityError(Exception):
    """Base error raised by an Identity Authority."""


class UserAlreadyExists(IdentityError):
    pass


class UserNotFound(IdentityError):
    pass


class InvalidCredentials(IdentityError):
    pass


@dataclass(frozen=True)
class IdentityUser:
    uid: str  # Stable subject id; never reassigned
    email: str
    display_name: str


@dataclass(frozen=True)
class IdentityClaim:
    """What the Identity Authority asserts about a verified token. Untrusted for authorization."""
    subject: str
    email: str
    role_hint: Optional[str] = None


class IdentityAuthority(ABC):

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[IdentityUser]:
        """The user registered under email, or None."""

    @abstractmethod
    def create_user(self, email: str, password: str, display_name: str) -> IdentityUser:
        """Create a user. Raises UserAlreadyExists when the email is taken."""

    @abstractmethod
    def update_password(self, uid: str, password: str) -> None:
        pass

    @abstractmethod
    def set_role_hint(self, uid: str, role: str) -> None:
        pass

    @abstractmethod
    def sign_in(self, email: str, password: str) -> str:
        """Exchange credentials for a bearer token. Raises InvalidCredentials."""

    @abstractmethod
    def verify_token(self, token: str) -> IdentityClaim:
        """Raises InvalidCredentials when the token is unknown or revoked."""


@dataclass
class _StoredUser:
    user: IdentityUser
    salt: bytes
    password_hash: bytes
    claims: Dict[str, str] = field(default_factory=dict)


def _hash_password(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 100_000)


class InMemoryIdentityAuthority(IdentityAuthority):
    """Process-local Identity Authority for development and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._users: Dict[str, _StoredUser] = {}
        self._tokens: Dict[str, str] = {}

    def get_user_by_email(self, email: str) -> Optional[IdentityUser]:
        wanted = email.strip().lower()
        with self._lock:
            for stored in self._users.values():
                if stored.user.email == wanted:
                    return stored.user
        return None

    def create_user(self, email: str, password: str, display_name: str) -> IdentityUser:
        normalized = email.strip().lower()
        with self._lock:
            if any(stored.user.email == normalized for stored in self._users.values()):
                raise UserAlreadyExists(f"The email address {normalized} is already in use")
            salt = secrets.token_bytes(16)
            user = IdentityUser(uid=uuid.uuid4().hex, email=normalized, display_name=display_name)
            self._users[user.uid] = _StoredUser(user=user, salt=salt, password_hash=_hash_password(password, salt))
            return user

    def update_password(self, uid: str, password: str) -> None:
        with self._lock:
            stored = self._get(uid)
            stored.salt = secrets.token_bytes(16)
            stored.password_hash = _hash_password(password, stored.salt)

    def set_role_hint(self, uid: str, role: str) -> None:
        with self._lock:
            self._get(uid).claims["role"] = role

    def sign_in(self, email: str, password: str) -> str:
        user = self.get_user_by_email(email)
        with self._lock:
            stored = self._users.get(user.uid) if user else None
            if stored is None or not hmac.compare_digest(
                stored.password_hash, _hash_password(password, stored.salt)
            ):
                raise InvalidCredentials("Invalid email or password")
            token = secrets.token_urlsafe(32)
            self._tokens[token] = stored.user.uid
            return token

    def verify_token(self, token: str) -> IdentityClaim:
        with self._lock:
            uid = self._tokens.get(token)
            if uid is None or uid not in self._users:
                raise InvalidCredentials("Invalid or expired token")
            stored = self._users[uid]
            return IdentityClaim(subject=uid, email=stored.user.email, role_hint=stored.claims.get("role"))

    def _get(self, uid: str) -> _StoredUser:
        stored = self._users.get(uid)
        if stored is None:
            raise UserNotFound(f"No user with uid {uid}")
        return stored


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class DatabaseIdentityAuthority(IdentityAuthority):
    """
    Identity Authority persisted through SQLAlchemy.

    Identities and issued tokens survive a restart, alongside the bootstrap lock
    and the accounts that reference them. Every call runs in its own session,
    independent of the caller's transaction.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        token_ttl_hours: int = IDENTITY_TOKEN_TTL_HOURS,
        clock: Clock = utcnow
    ):
        self._session_factory = session_factory
        self.token_ttl = timedelta(hours=token_ttl_hours)
        self.clock = clock

    def get_user_by_email(self, email: str) -> Optional[IdentityUser]:
        with self._session_factory() as db:
            record = self._by_email(db, email)
            return _to_user(record) if record else None

    def create_user(self, email: str, password: str, display_name: str) -> IdentityUser:
        normalized = email.strip().lower()
        salt = secrets.token_bytes(16)
        user = IdentityUser(uid=uuid.uuid4().hex, email=normalized, display_name=display_name)
        with self._session_factory() as db:
            db.add(IdentityRecord(
                uid=user.uid,
                email=normalized,
                display_name=display_name,
                salt=salt,
                password_hash=_hash_password(password, salt),
                created_at=self.clock()
            ))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise UserAlreadyExists(f"The email address {normalized} is already in use")
        return user

    def update_password(self, uid: str, password: str) -> None:
        with self._session_factory() as db:
            record = self._get(db, uid)
            record.salt = secrets.token_bytes(16)
            record.password_hash = _hash_password(password, record.salt)
            db.commit()

    def set_role_hint(self, uid: str, role: str) -> None:
        with self._session_factory() as db:
            self._get(db, uid).role_hint = role
            db.commit()

    def sign_in(self, email: str, password: str) -> str:
        with self._session_factory() as db:
            record = self._by_email(db, email)
            if record is None or not hmac.compare_digest(
                record.password_hash, _hash_password(password, record.salt)
            ):
                raise InvalidCredentials("Invalid email or password")
            token = secrets.token_urlsafe(32)
            now = self.clock()
            db.add(IdentityToken(
                token_hash=_token_digest(token),
                uid=record.uid,
                issued_at=now,
                expires_at=now + self.token_ttl
            ))
            db.commit()
            return token

    def verify_token(self, token: str) -> IdentityClaim:
        with self._session_factory() as db:
            issued = db.get(IdentityToken, _token_digest(token))
            if issued is None or issued.expires_at <= self.clock():
                raise InvalidCredentials("Invalid or expired token")
            record = db.get(IdentityRecord, issued.uid)
            if record is None:
                raise InvalidCredentials("Invalid or expired token")
            return IdentityClaim(subject=record.uid, email=record.email, role_hint=record.role_hint)

    def _by_email(self, db: Session, email: str) -> Optional[IdentityRecord]:
        return db.query(IdentityRecord).filter(IdentityRecord.email == email.strip().lower()).first()

    def _get(self, db: Session, uid: str) -> IdentityRecord:
        record = db.get(IdentityRecord, uid)
        if record is None:
            raise UserNotFound(f"No user with uid {uid}")
        return record


def _to_user(record: IdentityRecord) -> IdentityUser:
    return IdentityUser(uid=record.uid, email=record.email, display_name=record.display_name)
