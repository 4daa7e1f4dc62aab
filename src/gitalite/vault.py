"""
Credential vault — the encrypted list of people allowed to write.

The vault is one Fernet blob on disk. The key is derived with
HKDF-SHA256 from a secret kept in a separate file, so the vault
can sit next to the pages without exposing who has access.

Storage layout::

    users.vault    # Fernet(JSON {"version": 1, "records": [...]})
    users.secret   # random secret, mode 0600

The blob is decrypted once at startup and held in memory. The only
mutation is ``add``; it rewrites the whole blob through a temp file
and a rename so a crash never leaves a half-written vault behind.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import secrets
import threading
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import ValidationError as ModelValidationError

from .errors import AlreadyExists, VaultError, VaultErrorKind
from .models import Identity, Role, VaultRecord, normalize_url

logger = logging.getLogger("gitalite.vault")

VAULT_FORMAT_VERSION = 1
_KDF_INFO = b"gitalite:vault:v1"


# ---------------------------------------------------------------------------
# Cryptographic helpers
# ---------------------------------------------------------------------------


def _derive_key(secret: bytes, info: bytes = _KDF_INFO) -> bytes:
    """32-byte vault key for ``secret``, bound to the vault format by ``info``."""
    return HKDF(algorithm=SHA256(), length=32, salt=None, info=info).derive(secret)


def _vault_cipher(key: bytes) -> Fernet:
    return Fernet(base64.urlsafe_b64encode(key))


def _fernet_encrypt(data: bytes, key: bytes) -> bytes:
    return _vault_cipher(key).encrypt(data)


def _fernet_decrypt(token: bytes, key: bytes) -> bytes:
    """Open a sealed blob; a wrong key or any tampering is DECRYPT_FAILED."""
    try:
        return _vault_cipher(key).decrypt(token)
    except InvalidToken as exc:
        raise VaultError(
            VaultErrorKind.DECRYPT_FAILED,
            "vault could not be decrypted (wrong secret or tampered file)",
        ) from exc


def generate_secret(path: Path, nbytes: int = 32) -> Path:
    """Write a fresh random vault secret with owner-only permissions.

    Args:
        path: Where to write the secret.
        nbytes: Entropy in bytes.

    Returns:
        The path written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(secrets.token_urlsafe(nbytes), encoding="utf-8")
    os.chmod(path, 0o600)
    logger.info("Generated vault secret at %s", path)
    return path


def _atomic_write(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` via a synced temp file and a rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with open(tmp_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    tmp_path.replace(path)


# ---------------------------------------------------------------------------
# CredentialVault
# ---------------------------------------------------------------------------


class CredentialVault:
    """In-memory view of the encrypted identity vault.

    Lookups read an immutable snapshot and never block. ``add`` holds
    a lock while it persists and then swaps the snapshot in.

    Use ``unlock`` or ``unlock_from_files`` rather than the constructor.
    """

    def __init__(
        self,
        path: Path,
        secret: bytes,
        records: Optional[list[VaultRecord]] = None,
    ) -> None:
        self._path = Path(path)
        self._key = _derive_key(secret)
        self._lock = threading.Lock()
        self._records: dict[str, VaultRecord] = {
            r.identity.profile_url: r for r in (records or [])
        }

    @property
    def path(self) -> Path:
        return self._path

    @classmethod
    def unlock(
        cls,
        path: Path,
        secret: bytes,
        seed: Optional[Identity] = None,
    ) -> "CredentialVault":
        """Open the vault, bootstrapping it on first run.

        Args:
            path: Vault file.
            secret: Secret the key is derived from.
            seed: Administrator to create when the vault does not exist.

        Returns:
            The unlocked vault.

        Raises:
            VaultError: NOT_FOUND when missing and no seed is given,
                DECRYPT_FAILED or CORRUPT when the blob is unusable.
        """
        path = Path(path)
        vault = cls(path, secret)

        if not path.exists():
            if seed is None:
                raise VaultError(
                    VaultErrorKind.NOT_FOUND,
                    f"vault {path} does not exist and no seed identity is configured",
                )
            logger.info("Creating new user vault at %s", path)
            vault.add(seed, Role.ADMINISTRATOR)
            return vault

        vault.reload()
        return vault

    @classmethod
    def unlock_from_files(
        cls,
        path: Path,
        secret_file: Path,
        seed: Optional[Identity] = None,
    ) -> "CredentialVault":
        """Like ``unlock`` but reads the secret from ``secret_file``."""
        secret_file = Path(secret_file)
        if not secret_file.exists():
            raise VaultError(
                VaultErrorKind.NOT_FOUND,
                f"vault secret file not found: {secret_file}",
            )
        secret = secret_file.read_bytes().strip()
        return cls.unlock(path, secret, seed=seed)

    def reload(self) -> None:
        """Re-read and decrypt the vault blob from disk."""
        logger.info("Loading user vault from %s", self._path)
        try:
            blob = self._path.read_bytes()
        except FileNotFoundError as exc:
            raise VaultError(VaultErrorKind.NOT_FOUND, str(exc)) from exc

        plaintext = _fernet_decrypt(blob, self._key)
        try:
            data = json.loads(plaintext)
            records = [VaultRecord(**r) for r in data["records"]]
        except (json.JSONDecodeError, KeyError, TypeError, ModelValidationError) as exc:
            raise VaultError(VaultErrorKind.CORRUPT, f"vault is corrupt: {exc}") from exc

        self._records = {r.identity.profile_url: r for r in records}
        logger.info("Vault unlocked: %d identities", len(self._records))

    def lookup(self, profile_url: str) -> Optional[VaultRecord]:
        """Find a record by profile URL (normalized before lookup)."""
        try:
            key = normalize_url(profile_url)
        except ValueError:
            return None
        return self._records.get(key)

    def find_by_email(self, email: str) -> Optional[VaultRecord]:
        """Find a record by email, case-insensitively."""
        wanted = (email or "").strip().lower()
        if not wanted:
            return None
        for record in self._records.values():
            if record.identity.email.lower() == wanted:
                return record
        return None

    def records(self) -> list[VaultRecord]:
        """All records in insertion order."""
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)

    def add(self, identity: Identity, role: Role = Role.STANDARD) -> VaultRecord:
        """Append a record and persist the vault.

        Args:
            identity: The identity to add.
            role: Its role, fixed for the lifetime of the record.

        Returns:
            The stored record.

        Raises:
            AlreadyExists: If the profile URL is already present.
        """
        with self._lock:
            if identity.profile_url in self._records:
                raise AlreadyExists(identity.profile_url)

            record = VaultRecord(identity=identity, role=role)
            updated = dict(self._records)
            updated[identity.profile_url] = record
            self._save(updated)
            self._records = updated

        logger.info(
            "Added %s (%s) to vault as %s",
            identity.display_name,
            identity.profile_url,
            role.value,
        )
        return record

    def _save(self, records: dict[str, VaultRecord]) -> None:
        payload = {
            "version": VAULT_FORMAT_VERSION,
            "records": [r.model_dump(mode="json") for r in records.values()],
        }
        blob = _fernet_encrypt(json.dumps(payload).encode("utf-8"), self._key)
        _atomic_write(self._path, blob)
        logger.debug("Vault saved to %s", self._path)
