"""
Pydantic models for the wiki's identities, sessions, and commits.

Identities are keyed by their normalized profile URL everywhere:
the vault, the handshake, and the session store all agree on
``normalize_url``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, Field, field_validator


def normalize_url(url: str) -> str:
    """Canonicalize a profile URL.

    Adds an https scheme when none is given, lowercases the scheme and
    host, turns an empty path into ``/`` and drops the fragment.

    Args:
        url: URL as typed by a user or returned by an auth server.

    Returns:
        The canonical form.

    Raises:
        ValueError: If the URL cannot identify a profile.
    """
    url = (url or "").strip()
    if not url:
        raise ValueError("empty profile URL")
    if "://" not in url:
        url = "https://" + url

    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        raise ValueError(f"unsupported scheme: {parts.scheme}")
    if parts.username or parts.password:
        raise ValueError("profile URL must not contain userinfo")
    if not parts.hostname:
        raise ValueError("profile URL has no host")

    netloc = parts.hostname.lower()
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"

    path = parts.path or "/"
    if any(seg in (".", "..") for seg in path.split("/")):
        raise ValueError("profile URL must not contain dot segments")

    return urlunsplit((scheme, netloc, path, parts.query, ""))


class Role(str, Enum):
    """What a known identity may do."""

    ADMINISTRATOR = "administrator"
    STANDARD = "standard"


class Identity(BaseModel):
    """A person who can sign commits."""

    display_name: str
    email: str
    profile_url: str

    @field_validator("profile_url")
    @classmethod
    def _canonical_url(cls, value: str) -> str:
        return normalize_url(value)


class VaultRecord(BaseModel):
    """One entry of the credential vault."""

    identity: Identity
    role: Role = Role.STANDARD
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Session(BaseModel):
    """A login session, as stored by the session store.

    ``profile_url`` is a weak reference into the vault: it is looked up
    again every time the session is used.
    """

    token: str
    profile_url: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at


class SessionView(BaseModel):
    """A session resolved against the vault for a single request."""

    session: Session
    identity: Optional[Identity] = None
    role: Optional[Role] = None

    @property
    def can_write(self) -> bool:
        """Only identities known to the vault may commit."""
        return self.identity is not None and self.role is not None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMINISTRATOR


class VerifiedProfile(BaseModel):
    """What a completed login handshake proves about the visitor."""

    profile_url: str
    name: Optional[str] = None
    email: Optional[str] = None
    photo: Optional[str] = None


class PendingLogin(BaseModel):
    """Handshake state between redirect and callback."""

    nonce: str
    claimed_url: str
    authorization_endpoint: str
    token_endpoint: Optional[str] = None
    code_verifier: str
    redirect_uri: str
    created_at: float
    expires_at: float


class Author(BaseModel):
    """Commit author resolved against the vault.

    ``identity`` is set when the author email belongs to a known
    record; otherwise only the raw git signature is available.
    """

    name: str
    email: Optional[str] = None
    identity: Optional[Identity] = None

    @property
    def is_known(self) -> bool:
        return self.identity is not None


class CommitInfo(BaseModel):
    """A commit as seen in page history."""

    commit_id: str
    author_name: str
    author_email: str
    timestamp: datetime
    message: str
    parents: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)


class WriteState(str, Enum):
    """Stages of a single write."""

    VALIDATING = "validating"
    LOCKED = "locked"
    STAGED = "staged"
    CONFLICT = "conflict"
    REBASED = "rebased"
    COMMITTED = "committed"
    PUSHED = "pushed"
    PUSH_PENDING = "push_pending"


class WriteResult(BaseModel):
    """Outcome of a successful write or push.

    ``state`` is PUSHED when the remote acknowledged the commit and
    PUSH_PENDING when it is only durable locally; ``warning`` then
    says why.
    """

    commit_id: str
    state: WriteState
    path: Optional[str] = None
    rebases: int = 0
    push_attempts: int = 0
    warning: Optional[str] = None

    @property
    def synchronized(self) -> bool:
        return self.state == WriteState.PUSHED
