"""
Identity resolution for the progress ledger.

The ledger never reads ambient session state; it is handed a resolver whose
current_identity() names the user every operation is scoped to.
SessionAuthority is the account/session side: it signs learners up, checks
credentials and hands out opaque session tokens that map to a username.
"""

import logging
import os
import secrets
import threading
import time
from typing import Callable, Optional, Protocol

from passlib.context import CryptContext

from study_model import UserRecord, load_record, save_record

SESSION_TTL = float(os.getenv("STUDY_SESSION_TTL_HOURS", "24")) * 3600

logger = logging.getLogger("session_authority")

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class AuthError(Exception):
    """Sign-up or login was refused."""


class IdentityResolver(Protocol):
    def current_identity(self) -> Optional[str]: ...


class StaticIdentity:
    """Resolver bound to one explicit username (or to nobody)."""

    def __init__(self, username: Optional[str]):
        self.username = username or None

    def current_identity(self) -> Optional[str]:
        return self.username


class _TokenIdentity:
    def __init__(self, authority: "SessionAuthority", token: Optional[str]):
        self._authority = authority
        self._token = token

    def current_identity(self) -> Optional[str]:
        return self._authority.identity_for(self._token)


class SessionAuthority:
    """Tokens expire `ttl` seconds after they are issued and are purged lazily."""

    def __init__(self, store, ttl: float = SESSION_TTL, clock: Callable[[], float] = time.monotonic):
        self.store = store
        self.ttl = ttl
        self._clock = clock
        self._sessions: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def sign_up(self, username: str, password: str) -> str:
        """Create an account and return a session token for it."""
        username = (username or "").strip()
        if not username or not password:
            raise AuthError("Username and password are required.")
        with self._lock:
            if self.store.exists(username):
                raise AuthError("User already exists.")
            record = UserRecord(credential_hash=pwd_context.hash(password))
            save_record(self.store, username, record)
        logger.info("Created account %s", username)
        return self._open_session(username)

    def login(self, username: str, password: str) -> str:
        username = (username or "").strip()
        record = load_record(self.store, username) if username else UserRecord()
        if not record.credential_hash or not pwd_context.verify(password or "", record.credential_hash):
            raise AuthError("Invalid username or password.")
        return self._open_session(username)

    def logout(self, token: Optional[str]) -> None:
        with self._lock:
            self._sessions.pop(token or "", None)

    def identity_for(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            username, expires_at = session
            if self._clock() >= expires_at:
                del self._sessions[token]
                return None
            return username

    def resolver(self, token: Optional[str]) -> IdentityResolver:
        return _TokenIdentity(self, token)

    def _open_session(self, username: str) -> str:
        token = secrets.token_urlsafe(24)
        now = self._clock()
        with self._lock:
            expired = [t for t, (_, expires_at) in self._sessions.items() if now >= expires_at]
            for t in expired:
                del self._sessions[t]
            self._sessions[token] = (username, now + self.ttl)
        return token
