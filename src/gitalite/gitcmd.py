"""
Thin wrapper around the ``git`` executable.

Every call goes through ``subprocess`` with captured output. Network
operations (clone, fetch, push) always carry a timeout so a stalled
remote can never hold the store's write lock forever.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterator, Optional, Union

from .errors import GitCommandError, SyncTimeout

logger = logging.getLogger("gitalite.gitcmd")

ZERO_OID = "0" * 40


def git_available() -> bool:
    """Whether a ``git`` executable is on PATH."""
    return shutil.which("git") is not None


def ssh_command(private_key: Optional[Path]) -> Optional[str]:
    """Build a GIT_SSH_COMMAND that uses the configured deploy key."""
    if private_key is None:
        return None
    return (
        f"ssh -i {private_key} -o IdentitiesOnly=yes"
        " -o StrictHostKeyChecking=accept-new -o BatchMode=yes"
    )


class GitRunner:
    """Runs git commands inside one repository.

    Args:
        repo_dir: Working copy the commands run in.
        env: Extra environment for every command (e.g. GIT_SSH_COMMAND).
        network_timeout: Seconds allowed for fetch/push/clone.
    """

    def __init__(
        self,
        repo_dir: Path,
        env: Optional[dict[str, str]] = None,
        network_timeout: float = 30.0,
    ) -> None:
        self.repo_dir = Path(repo_dir)
        self.network_timeout = network_timeout
        self._env = os.environ.copy()
        self._env.update({
            "LC_ALL": "C",
            "GIT_TERMINAL_PROMPT": "0",
        })
        self._env.update(env or {})

    def _merged_env(self, env: Optional[dict[str, str]]) -> dict[str, str]:
        if not env:
            return self._env
        merged = dict(self._env)
        merged.update(env)
        return merged

    def run(
        self,
        *args: str,
        input: Optional[Union[str, bytes]] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        binary: bool = False,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """Run ``git <args>`` and return the completed process.

        Args:
            args: git subcommand and arguments.
            input: Data fed to stdin.
            env: Extra environment for this call only.
            timeout: Seconds before the process is killed.
            binary: Return stdout/stderr as bytes instead of text.
            check: Raise GitCommandError on a non-zero exit.

        Raises:
            GitCommandError: When ``check`` is set and git fails.
            subprocess.TimeoutExpired: When ``timeout`` elapses.
        """
        cmd = ["git", *args]
        if binary and isinstance(input, str):
            input = input.encode("utf-8")
        result = subprocess.run(
            cmd,
            input=input,
            capture_output=True,
            text=not binary,
            check=False,
            cwd=str(self.repo_dir),
            env=self._merged_env(env),
            timeout=timeout,
        )
        if check and result.returncode != 0:
            stderr = result.stderr
            if isinstance(stderr, bytes):
                stderr = stderr.decode("utf-8", "replace")
            raise GitCommandError(cmd, result.returncode, stderr)
        return result

    def output(self, *args: str, **kwargs) -> str:
        """Run git and return stripped stdout text."""
        return self.run(*args, **kwargs).stdout.strip()

    def network(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a command that talks to the remote, under the network timeout.

        Raises:
            SyncTimeout: If the remote does not answer in time.
        """
        try:
            return self.run(*args, timeout=self.network_timeout, check=check)
        except subprocess.TimeoutExpired as exc:
            logger.warning("git %s timed out after %.1fs", args[0], self.network_timeout)
            raise SyncTimeout(f"git {args[0]} timed out after {self.network_timeout}s") from exc

    def rev_parse(self, ref: str) -> Optional[str]:
        """Resolve ``ref`` to a commit id, or None if it does not exist."""
        result = self.run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self.run("merge-base", "--is-ancestor", ancestor, descendant, check=False)
        return result.returncode == 0

    def stream(self, *args: str) -> Iterator[str]:
        """Yield stdout lines of a long-running git command lazily.

        The process is killed if the consumer stops early.
        """
        proc = subprocess.Popen(
            ["git", *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=str(self.repo_dir),
            env=self._env,
        )
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                yield line.rstrip("\n")
        finally:
            if proc.stdout is not None:
                proc.stdout.close()
            if proc.poll() is None:
                proc.kill()
            proc.wait()

    @classmethod
    def clone(
        cls,
        url: str,
        dest: Path,
        env: Optional[dict[str, str]] = None,
        network_timeout: float = 30.0,
    ) -> "GitRunner":
        """Clone ``url`` into ``dest`` and return a runner for it."""
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        parent = cls(dest.parent, env=env, network_timeout=network_timeout)
        logger.info("Cloning %s into %s", url, dest)
        parent.network("clone", "--quiet", url, str(dest))
        return cls(dest, env=env, network_timeout=network_timeout)
