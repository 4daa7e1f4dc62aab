"""
Session binder: opaque browser tokens mapped to verified identities.

The binder mints tokens and resolves them. Keeping the token mapping
is the session store's job. Two stores ship: an in-memory one for
single-process use and tests, and a sqlite one for restarts.

A session only remembers the profile URL. Who that is, and what they
may do, is looked up in the vault again on every request.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Protocol

from .errors import ConfigError
from .models import Session, SessionView, normalize_url
from .vault import CredentialVault

logger = logging.getLogger("gitalite.sessions")

SESSION_COOKIE_NAME = "gitalite_session"
TOKEN_BYTES = 32


class SessionStore(Protocol):
    """Key-value contract the binder persists sessions through."""

    def put(self, token: str, profile_url: str, expires_at: datetime) -> None: ...

    def get(self, token: str) -> Optional[Session]: ...

    def delete(self, token: str) -> None: ...


class MemorySessionStore:
    """Thread-safe dict-backed store. Sessions die with the process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def put(self, token: str, profile_url: str, expires_at: datetime) -> None:
        with self._lock:
            self._sessions[token] = Session(
                token=token, profile_url=profile_url, expires_at=expires_at
            )

    def get(self, token: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(token)
            if session is not None and session.is_expired:
                del self._sessions[token]
                return None
            return session

    def delete(self, token: str) -> None:
        with self._lock:
            self._sessions.pop(token, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SqliteSessionStore:
    """Sessions persisted in a sqlite table.

    A connection is opened per call so the store is safe to share
    between HTTP handler threads.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS sessions ("
                " token TEXT PRIMARY KEY,"
                " profile_url TEXT NOT NULL,"
                " created_at TEXT NOT NULL,"
                " expires_at TEXT NOT NULL)"
            )

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._path), timeout=10)

    def put(self, token: str, profile_url: str, expires_at: datetime) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sessions VALUES (?, ?, ?, ?)",
                (token, profile_url, now, expires_at.isoformat()),
            )

    def get(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token, profile_url, created_at, expires_at"
                " FROM sessions WHERE token = ?",
                (token,),
            ).fetchone()
        if row is None:
            return None

        session = Session(
            token=row[0],
            profile_url=row[1],
            created_at=datetime.fromisoformat(row[2]),
            expires_at=datetime.fromisoformat(row[3]),
        )
        if session.is_expired:
            self.delete(token)
            return None
        return session

    def delete(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE token = ?", (token,))

    def purge_expired(self) -> int:
        """Drop expired rows. Returns how many were removed."""
        now = datetime.now(timezone.utc).isoformat()
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE expires_at <= ?", (now,))
            return cur.rowcount


def open_session_store(url: str) -> SessionStore:
    """Build a session store from a connection string.

    Args:
        url: ``memory://`` or ``sqlite:///path/to/sessions.db``.

    Returns:
        The store.

    Raises:
        ConfigError: For unknown schemes.
    """
    if url.startswith("memory://"):
        return MemorySessionStore()
    if url.startswith("sqlite:///"):
        return SqliteSessionStore(Path(url[len("sqlite:///"):]))
    raise ConfigError(f"unsupported session store: {url}")


class SessionBinder:
    """Mints, resolves, and invalidates login sessions.

    Args:
        vault: Where roles are looked up.
        store: Where token mappings are kept.
        ttl: How long a session lives.
    """

    def __init__(
        self,
        vault: CredentialVault,
        store: SessionStore,
        ttl: timedelta = timedelta(days=7),
    ) -> None:
        self.vault = vault
        self.store = store
        self.ttl = ttl

    def create(self, identity_url: str) -> SessionView:
        """Start a session for a verified profile URL.

        An identity the vault does not know still gets a session; it
        simply has no role.
        """
        profile_url = normalize_url(identity_url)
        token = secrets.token_urlsafe(TOKEN_BYTES)
        now = datetime.now(timezone.utc)
        session = Session(
            token=token,
            profile_url=profile_url,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.put(token, profile_url, session.expires_at)

        view = self._view(session)
        logger.info(
            "Session created for %s (%s)",
            profile_url,
            view.role.value if view.role else "guest",
        )
        return view

    def resolve(self, token: Optional[str]) -> Optional[SessionView]:
        """Look a token up. Anything unusable resolves to no session."""
        if not token:
            return None
        try:
            session = self.store.get(token)
        except Exception as exc:
            logger.warning("Session store lookup failed: %s", exc)
            return None
        if session is None or session.is_expired:
            return None
        return self._view(session)

    def invalidate(self, token: Optional[str]) -> None:
        """End a session. Unknown tokens are ignored."""
        if not token:
            return
        self.store.delete(token)
        logger.info("Session invalidated")

    def _view(self, session: Session) -> SessionView:
        record = self.vault.lookup(session.profile_url)
        if record is None:
            return SessionView(session=session)
        return SessionView(session=session, identity=record.identity, role=record.role)
