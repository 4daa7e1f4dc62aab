"""Shared test fixtures for gitalite."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from gitalite.config import SyncSettings
from gitalite.models import Identity
from gitalite.vault import CredentialVault

SECRET = b"correct horse battery staple"

_GIT_ENV = {
    "GIT_AUTHOR_NAME": "Other Editor",
    "GIT_AUTHOR_EMAIL": "other@example.com",
    "GIT_COMMITTER_NAME": "Other Editor",
    "GIT_COMMITTER_EMAIL": "other@example.com",
    "GIT_CONFIG_NOSYSTEM": "1",
    "LC_ALL": "C",
}


def run_git(cwd: Path, *args: str) -> str:
    """Run git outside the store, as another user of the remote would."""
    env = os.environ.copy()
    env.update(_GIT_ENV)
    result = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        env=env,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def push_from_other_clone(remote: Path, workdir: Path, path: str, content: str) -> str:
    """Clone ``remote``, commit one file and push it. Returns the new commit id."""
    if not workdir.exists():
        run_git(remote.parent, "clone", "--quiet", str(remote), str(workdir))
    else:
        run_git(workdir, "pull", "--quiet", "--rebase", "origin", "main")
    target = workdir / path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    run_git(workdir, "add", path)
    run_git(workdir, "commit", "--quiet", "-m", f"[update] {path}")
    run_git(workdir, "push", "--quiet", "origin", "HEAD:refs/heads/main")
    return run_git(workdir, "rev-parse", "HEAD")


@pytest.fixture
def seed_identity() -> Identity:
    """The administrator a fresh vault is bootstrapped with."""
    return Identity(
        display_name="callym",
        email="callym@example.com",
        profile_url="http://localhost:3002/callym",
    )


@pytest.fixture
def editor_identity() -> Identity:
    return Identity(
        display_name="Ada",
        email="ada@example.com",
        profile_url="https://ada.example.com/",
    )


@pytest.fixture
def vault(tmp_path: Path, seed_identity: Identity) -> CredentialVault:
    """A bootstrapped vault holding the seed administrator."""
    return CredentialVault.unlock(tmp_path / "users.vault", SECRET, seed=seed_identity)


@pytest.fixture
def empty_remote(tmp_path: Path) -> Path:
    """A bare repository with no commits."""
    remote = tmp_path / "remote.git"
    run_git(tmp_path, "init", "--quiet", "--bare", "--initial-branch=main", str(remote))
    return remote


@pytest.fixture
def remote(tmp_path: Path, empty_remote: Path) -> Path:
    """A bare repository whose main branch holds ``index.md``."""
    push_from_other_clone(empty_remote, tmp_path / "seed-clone", "index.md", "# Welcome\n")
    return empty_remote


@pytest.fixture
def sync_settings() -> SyncSettings:
    """Fast retries: no real sleeping between attempts."""
    return SyncSettings(network_timeout=30.0, max_sync_attempts=3, push_attempts=5,
                        backoff_base=0.0, backoff_max=0.0)


@pytest.fixture
def store(tmp_path: Path, remote: Path, sync_settings: SyncSettings):
    """A content store cloned from ``remote``."""
    from gitalite.store import GitContentStore

    return GitContentStore(
        tmp_path / "pages",
        remote_url=str(remote),
        committer=("gitalite", "wiki@example.com"),
        settings=sync_settings,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def git():
    """``git(cwd, *args)`` runs git as an outside user and returns stdout."""
    return run_git


@pytest.fixture
def push_elsewhere(tmp_path: Path, remote: Path):
    """``push_elsewhere(name, path, content)`` commits to ``remote`` from another clone."""

    def _push(name: str, path: str, content: str) -> str:
        return push_from_other_clone(remote, tmp_path / name, path, content)

    return _push
