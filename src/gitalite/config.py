"""
Wiki configuration.

Loaded once at startup from a YAML file and validated with pydantic.
Relative paths are resolved against the directory holding the file.

Example::

    listen_on: 127.0.0.1:3000
    client_id: https://wiki.example.com
    allowed_mime_types: [image/png]
    pages_directory: pages
    pages_git:
      repository: git@example.com:me/wiki-pages.git
      private_key: keys/id_ed25519
      username: gitalite
      email: wiki@example.com
    users:
      database: users.vault
      password: users.secret
      initial:
        display_name: callym
        email: callym@example.com
        profile_url: https://callym.example.com/
    session_store: sqlite:///sessions.db
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError

from .errors import ConfigError
from .models import Identity

logger = logging.getLogger("gitalite.config")


class GitConfig(BaseModel):
    """Remote repository and the service identity that commits to it."""

    repository: str
    branch: str = "main"
    private_key: Optional[Path] = None
    public_key: Optional[Path] = None
    username: str = "gitalite"
    email: str = "gitalite@localhost"


class UsersConfig(BaseModel):
    """Where the encrypted vault and its secret live."""

    database: Path = Path("users.vault")
    password: Path = Path("users.secret")
    initial: Optional[Identity] = None


class SyncSettings(BaseModel):
    """Timeouts and retry bounds for talking to the remote."""

    network_timeout: float = 30.0
    max_sync_attempts: int = 5
    push_attempts: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 8.0


class RendererSettings(BaseModel):
    pandoc_path: str = "pandoc"
    timeout: float = 20.0


class WikiConfig(BaseModel):
    """Complete runtime configuration."""

    listen_on: str = "127.0.0.1:3000"
    client_id: str = "http://localhost:3000"
    allowed_mime_types: set[str] = Field(default_factory=set)
    pages_directory: Path = Path("pages")
    pages_git: GitConfig
    users: UsersConfig = Field(default_factory=UsersConfig)
    session_store: str = "memory://"
    session_ttl_hours: int = 24 * 7
    login_timeout_minutes: int = 10
    sync: SyncSettings = Field(default_factory=SyncSettings)
    renderer: RendererSettings = Field(default_factory=RendererSettings)
    log_file: Optional[Path] = None
    log_level: str = "INFO"

    @property
    def listen_address(self) -> tuple[str, int]:
        """``listen_on`` split into a (host, port) pair."""
        host, _, port = self.listen_on.rpartition(":")
        return host or "127.0.0.1", int(port)

    @property
    def redirect_uri(self) -> str:
        return f"{self.client_id.rstrip('/')}/meta/login-callback"

    def resolve_paths(self, base: Path) -> "WikiConfig":
        """Make every relative path absolute against ``base``."""

        def _abs(p: Optional[Path]) -> Optional[Path]:
            if p is None:
                return None
            p = p.expanduser()
            return p if p.is_absolute() else (base / p).resolve()

        self.pages_directory = _abs(self.pages_directory)
        self.users.database = _abs(self.users.database)
        self.users.password = _abs(self.users.password)
        self.pages_git.private_key = _abs(self.pages_git.private_key)
        self.pages_git.public_key = _abs(self.pages_git.public_key)
        self.log_file = _abs(self.log_file)
        if self.session_store.startswith("sqlite:///"):
            db = Path(self.session_store[len("sqlite:///"):])
            self.session_store = f"sqlite:///{_abs(db)}"
        return self


def load_config(path: Path) -> WikiConfig:
    """Load and validate the YAML configuration.

    Args:
        path: Path to the config file.

    Returns:
        WikiConfig with absolute paths.

    Raises:
        ConfigError: If the file is missing, not YAML, or invalid.
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc

    try:
        config = WikiConfig(**data)
    except (ModelValidationError, TypeError) as exc:
        raise ConfigError(f"invalid config {path}: {exc}") from exc

    logger.info("Loaded config from %s", path)
    return config.resolve_paths(path.resolve().parent)
