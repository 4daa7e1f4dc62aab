"""
Error taxonomy shared by every gitalite component.

Errors are raised where they happen and only mapped to HTTP
statuses or CLI exit codes at the outer edge (server, cli).
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence


class GitaliteError(Exception):
    """Base class for all gitalite errors."""


class ValidationError(GitaliteError):
    """Bad input, rejected before any lock is taken or state changes."""


class NotFound(GitaliteError):
    """A page or revision does not exist."""


class PageExists(GitaliteError):
    """A page being created is already there."""


class ConfigError(GitaliteError):
    """The configuration file is missing or invalid."""


class RenderError(GitaliteError):
    """The renderer could not turn a document into HTML."""


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------


class VaultErrorKind(str, Enum):
    """Why the credential vault refused an operation."""

    NOT_FOUND = "not_found"
    DECRYPT_FAILED = "decrypt_failed"
    CORRUPT = "corrupt"
    ALREADY_EXISTS = "already_exists"


class VaultError(GitaliteError):
    """Credential vault failure.

    Fatal at startup for every kind except ALREADY_EXISTS.
    """

    def __init__(self, kind: VaultErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


class AlreadyExists(VaultError):
    """A record with the same profile URL is already in the vault."""

    def __init__(self, profile_url: str):
        self.profile_url = profile_url
        super().__init__(
            VaultErrorKind.ALREADY_EXISTS,
            f"identity already exists: {profile_url}",
        )


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


class HandshakeErrorKind(str, Enum):
    """Why a login attempt was abandoned."""

    INVALID_STATE = "invalid_state"
    IDENTITY_MISMATCH = "identity_mismatch"
    TIMEOUT = "timeout"
    DISCOVERY_FAILED = "discovery_failed"
    EXCHANGE_FAILED = "exchange_failed"


class HandshakeError(GitaliteError):
    """A login attempt failed. The attempt is always discarded."""

    def __init__(self, kind: HandshakeErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)


# ---------------------------------------------------------------------------
# Git / sync
# ---------------------------------------------------------------------------


class GitCommandError(GitaliteError):
    """A git subprocess exited non-zero."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"git {' '.join(self.command[1:])} failed ({returncode}): {stderr.strip()}"
        )


class SyncError(GitaliteError):
    """Base class for remote synchronization failures."""

    def __init__(self, message: str = "", commit_id: Optional[str] = None):
        self.commit_id = commit_id
        super().__init__(message)


class SyncConflict(SyncError):
    """The remote kept advancing past every rebase attempt."""


class SyncTimeout(SyncError):
    """A fetch or push did not finish within the network timeout."""


class PushFailed(SyncError):
    """Pushing a local commit failed after every retry."""
