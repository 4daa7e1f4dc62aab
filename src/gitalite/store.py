"""
Git content store — the single working copy every page lives in.

Reads and writes go through here. The store owns one local clone of
one remote branch and one mutex guarding it.

    read(path)       -> bytes at the published tip, never blocked
    write(path, ...) -> validate -> lock -> stage -> fetch/rebase
                        -> commit -> push -> unlock
    history(path)    -> lazy, restartable log of commits touching path

Staging never touches the working tree or the real index. A temporary
index builds the new tree and ``commit-tree`` makes the commit. The
branch only moves, by compare-and-swap, once the commit is final, so
an interrupted write leaves nothing but unreachable objects behind.

Readers resolve paths against ``self._tip``, a commit id that is
replaced in one assignment after the branch ref has moved.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import tempfile
import threading
import time
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, Iterator, Optional

from .config import SyncSettings, WikiConfig
from .errors import (
    GitCommandError,
    NotFound,
    PageExists,
    PushFailed,
    SyncConflict,
    SyncError,
    SyncTimeout,
    ValidationError,
)
from .gitcmd import ZERO_OID, GitRunner, ssh_command
from .models import Author, CommitInfo, Identity, WriteResult, WriteState

logger = logging.getLogger("gitalite.store")

RESERVED_PREFIX = "meta"
DEFAULT_MIME = "text/plain"
BLOB_MODE = "100644"

_REVISION_RE = re.compile(r"^[0-9a-fA-F]{4,40}$")
_RECORD_SEP = "\x1e"
_FIELD_SEP = "\x1f"
_LOG_FORMAT = _RECORD_SEP + _FIELD_SEP.join(["%H", "%P", "%an", "%ae", "%aI", "%s"])
_REJECTED_MARKERS = ("non-fast-forward", "fetch first", "[rejected]", "stale info")

# path -> (mode, blob id), or None to delete the path
Changes = dict[str, Optional[tuple[str, str]]]


class _PushRejected(PushFailed):
    """The remote refused a push because it has moved on."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def infer_mime(path: str) -> str:
    """Mime type implied by a path's extension (text/plain if unknown)."""
    mime, _ = mimetypes.guess_type(path, strict=False)
    return mime or DEFAULT_MIME


def _essence(mime: str) -> str:
    return (mime or "").split(";", 1)[0].strip().lower()


def clean_path(path: str, allow_reserved: bool = False) -> str:
    """Check a repository-relative page path and return it normalized.

    Args:
        path: Path as requested, POSIX separators.
        allow_reserved: Accept paths under ``meta/``.

    Raises:
        ValidationError: For empty, absolute, traversing, ``.git`` or
            reserved paths.
    """
    if not path or not path.strip():
        raise ValidationError("empty path")
    if "\x00" in path or "\\" in path:
        raise ValidationError(f"invalid characters in path: {path!r}")
    if path.startswith("/"):
        raise ValidationError(f"absolute path not allowed: {path}")
    if path.endswith("/"):
        raise ValidationError(f"path names a directory: {path}")

    segments = path.split("/")
    for seg in segments:
        if seg in ("", ".", ".."):
            raise ValidationError(f"path traversal not allowed: {path}")
        if seg.lower() == ".git":
            raise ValidationError(f"path inside .git not allowed: {path}")

    if not allow_reserved and segments[0].lower() == RESERVED_PREFIX:
        raise ValidationError(f"{path} is reserved for internal use")

    return str(PurePosixPath(*segments))


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class History:
    """Commits touching a path, newest first.

    Iterating starts a fresh ``git log`` pinned to the tip captured when
    the history was requested, so two passes see the same commits.
    """

    def __init__(
        self,
        git: GitRunner,
        tip: Optional[str],
        path: Optional[str] = None,
        author_email: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> None:
        self._git = git
        self.tip = tip
        self.path = path
        self.author_email = author_email.lower() if author_email else None
        self.limit = limit

    def __iter__(self) -> Iterator[CommitInfo]:
        if self.tip is None:
            return
        args = ["-c", "core.quotePath=false", "log", "--no-color",
                f"--format={_LOG_FORMAT}", "--name-only", self.tip]
        if self.path:
            args += ["--", self.path]

        count = 0
        for commit in self._parse(self._git.stream(*args)):
            if self.author_email and commit.author_email.lower() != self.author_email:
                continue
            yield commit
            count += 1
            if self.limit is not None and count >= self.limit:
                return

    @staticmethod
    def _parse(lines: Iterator[str]) -> Iterator[CommitInfo]:
        header: Optional[list[str]] = None
        files: list[str] = []
        for line in lines:
            if line.startswith(_RECORD_SEP):
                if header is not None:
                    yield History._build(header, files)
                header = line[1:].split(_FIELD_SEP)
                files = []
            elif line.strip() and header is not None:
                files.append(line)
        if header is not None:
            yield History._build(header, files)

    @staticmethod
    def _build(header: list[str], files: list[str]) -> CommitInfo:
        commit_id, parents, name, email, date, subject = (header + [""] * 6)[:6]
        return CommitInfo(
            commit_id=commit_id,
            parents=parents.split(),
            author_name=name,
            author_email=email,
            timestamp=datetime.fromisoformat(date),
            message=subject,
            files=files,
        )


# ---------------------------------------------------------------------------
# GitContentStore
# ---------------------------------------------------------------------------


class GitContentStore:
    """Serialized, attributed access to the wiki's git working copy.

    Args:
        directory: Local working copy (cloned from ``remote_url`` if absent).
        remote_url: The canonical remote.
        branch: Branch pages live on.
        committer: (name, email) of the wiki itself; authors are users.
        allowed_mime_types: Non-text mime types accepted for writes.
        settings: Timeouts and retry bounds.
        env: Extra git environment (SSH key, ...).
        sleep: Backoff sleep function.
    """

    def __init__(
        self,
        directory: Path,
        remote_url: Optional[str] = None,
        branch: str = "main",
        committer: tuple[str, str] = ("gitalite", "gitalite@localhost"),
        allowed_mime_types: Optional[set[str]] = None,
        settings: Optional[SyncSettings] = None,
        env: Optional[dict[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.directory = Path(directory)
        env = dict(env or {})
        env.setdefault("GIT_COMMITTER_NAME", committer[0])
        env.setdefault("GIT_COMMITTER_EMAIL", committer[1])
        self.branch = branch
        self.committer = committer
        self.allowed_mime_types = {_essence(m) for m in (allowed_mime_types or set())}
        self.settings = settings or SyncSettings()
        self._sleep = sleep
        self._lock = threading.Lock()
        self.local_ref = f"refs/heads/{branch}"
        self.remote_ref = f"refs/remotes/origin/{branch}"

        if (self.directory / ".git").exists():
            self.git = GitRunner(self.directory, env=env, network_timeout=self.settings.network_timeout)
            self._ensure_remote(remote_url)
        elif remote_url:
            self.git = GitRunner.clone(
                remote_url, self.directory, env=env,
                network_timeout=self.settings.network_timeout,
            )
        else:
            raise ValidationError(
                f"{self.directory} is not a git repository and no remote is configured"
            )

        self._ensure_branch()
        self._tip: Optional[str] = self.git.rev_parse(self.local_ref)
        logger.info(
            "Content store opened at %s (branch %s, tip %s)",
            self.directory, self.branch, self._tip[:12] if self._tip else "empty",
        )

    @classmethod
    def from_config(cls, config: WikiConfig) -> "GitContentStore":
        env = {}
        ssh = ssh_command(config.pages_git.private_key)
        if ssh:
            env["GIT_SSH_COMMAND"] = ssh
        return cls(
            directory=config.pages_directory,
            remote_url=config.pages_git.repository,
            branch=config.pages_git.branch,
            committer=(config.pages_git.username, config.pages_git.email),
            allowed_mime_types=config.allowed_mime_types,
            settings=config.sync,
            env=env,
        )

    def _ensure_remote(self, remote_url: Optional[str]) -> None:
        remotes = self.git.output("remote").split()
        for name in remotes:
            logger.info("Found remote: %s", name)
        if "origin" not in remotes:
            if not remote_url:
                raise ValidationError(f"{self.directory} has no 'origin' remote")
            self.git.run("remote", "add", "origin", remote_url)

    def _ensure_branch(self) -> None:
        """Point HEAD at the pages branch, tracking the remote if it exists."""
        if self.git.rev_parse(self.local_ref) is None and self.git.rev_parse(self.remote_ref):
            self.git.run("checkout", "--quiet", "-B", self.branch, self.remote_ref)
        else:
            self.git.run("symbolic-ref", "HEAD", self.local_ref)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def tip(self) -> Optional[str]:
        """Commit id readers currently resolve against."""
        return self._tip

    def read(self, path: str, revision: Optional[str] = None) -> bytes:
        """Contents of ``path`` at the published tip or at ``revision``.

        Raises:
            NotFound: If the path (or revision) does not exist.
            ValidationError: For malformed paths or revisions.
        """
        path = clean_path(path, allow_reserved=True)
        if revision is not None and not _REVISION_RE.match(revision):
            raise ValidationError(f"invalid revision: {revision}")

        commit = revision or self._tip
        if commit is None:
            raise NotFound(path)

        result = self.git.run("cat-file", "blob", f"{commit}:{path}", binary=True, check=False)
        if result.returncode != 0:
            raise NotFound(f"{path}@{commit[:12]}" if revision else path)
        return result.stdout

    def exists(self, path: str) -> bool:
        tip = self._tip
        if tip is None:
            return False
        return self._has_blob(tip, clean_path(path, allow_reserved=True))

    def _has_blob(self, commit: str, path: str) -> bool:
        result = self.git.run("cat-file", "-t", f"{commit}:{path}", check=False)
        return result.returncode == 0 and result.stdout.strip() == "blob"

    def history(self, path: str) -> History:
        """Commits touching ``path``, newest first (lazy, restartable)."""
        return History(self.git, self._tip, path=clean_path(path, allow_reserved=True))

    def history_by_author(self, email: str, limit: Optional[int] = None) -> History:
        """Commits authored by ``email``, newest first."""
        return History(self.git, self._tip, author_email=email, limit=limit)

    def resolve_author(self, commit: CommitInfo, vault) -> Author:
        """Match a commit's author email against the vault."""
        record = vault.find_by_email(commit.author_email) if vault is not None else None
        if record is not None:
            return Author(
                name=record.identity.display_name,
                email=record.identity.email,
                identity=record.identity,
            )
        return Author(name=commit.author_name or "Unknown", email=commit.author_email or None)

    def pending_count(self) -> int:
        """Local commits the remote has not acknowledged yet."""
        local = self.git.rev_parse(self.local_ref)
        if local is None:
            return 0
        remote = self.git.rev_parse(self.remote_ref)
        revs = f"{remote}..{local}" if remote else local
        return int(self.git.output("rev-list", "--count", revs) or 0)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def validate_write(
        self,
        path: str,
        mime: str,
        author: Optional[Identity],
        message: str,
    ) -> str:
        """Every check a write needs, done without touching the lock.

        Returns:
            The normalized path.

        Raises:
            ValidationError: On any bad input.
        """
        path = clean_path(path)

        mime = _essence(mime)
        if not mime:
            raise ValidationError("missing mime type")
        inferred = _essence(infer_mime(path))
        if mime != inferred:
            raise ValidationError(f"mime type {mime} does not match {path} ({inferred})")
        if not (mime.startswith("text/") or mime in self.allowed_mime_types):
            raise ValidationError(f"mime type {mime} is not allowed")

        if not message or not message.strip() or "\x00" in message:
            raise ValidationError("commit message must not be empty")

        if author is None or not author.display_name.strip() or not author.email.strip():
            raise ValidationError("writes must be attributed to a known identity")

        return path

    def write(
        self,
        path: str,
        data: bytes,
        mime: str,
        author: Identity,
        message: str,
        expect_absent: bool = False,
    ) -> WriteResult:
        """Commit ``data`` at ``path`` as ``author`` and sync with the remote.

        With ``expect_absent`` the write only creates: it fails if the
        path exists once the remote has been fetched.

        Returns:
            WriteResult in state PUSHED, or PUSH_PENDING with a warning
            when the commit is only durable locally.

        Raises:
            ValidationError: Before the lock, for bad input.
            SyncConflict: When the remote kept moving past every rebase;
                nothing was committed.
            PageExists: With ``expect_absent``, when the path is taken.
        """
        path = self.validate_write(path, mime, author, message)

        with self._lock:
            logger.debug("write %s: %s", path, WriteState.LOCKED.value)
            blob = self.git.output("hash-object", "-w", "--stdin", input=data, binary=True)
            if isinstance(blob, bytes):
                blob = blob.decode("ascii").strip()
            changes: Changes = {path: (BLOB_MODE, blob)}
            return self._commit_and_sync(
                path, changes, author, message.strip(), expect_absent=expect_absent,
            )

    def push(self) -> Optional[WriteResult]:
        """Push local commits left behind by earlier sync failures.

        Returns:
            WriteResult for the pushed tip, or None if nothing was pending.
        """
        with self._lock:
            if self.pending_count() == 0:
                return None
            local = self.git.rev_parse(self.local_ref)
            logger.info("Pushing pending commits up to %s", local[:12])
            return self._push_with_retry(local, path=None, rebases=0)

    def _commit_and_sync(
        self,
        path: str,
        changes: Changes,
        author: Identity,
        message: str,
        expect_absent: bool = False,
    ) -> WriteResult:
        local = self.git.rev_parse(self.local_ref)
        base = local
        if expect_absent and base is not None and self._has_blob(base, path):
            raise PageExists(path)
        commit = self._build_commit(base, changes, author.display_name, author.email, message)
        logger.debug("write %s: %s %s", path, WriteState.STAGED.value, commit[:12])

        rebases = 0
        while True:
            try:
                remote = self._fetch()
            except SyncError as exc:
                # remote unreachable: keep the write locally
                self._advance(local, commit)
                logger.warning("Committed %s locally, remote unreachable: %s", commit[:12], exc)
                return WriteResult(
                    commit_id=commit,
                    state=WriteState.PUSH_PENDING,
                    path=path,
                    rebases=rebases,
                    warning=f"{type(exc).__name__}: {exc}",
                )

            if remote is None:
                break
            if base is not None and (remote == base or self.git.is_ancestor(remote, base)):
                break

            rebases += 1
            logger.info(
                "write %s: %s (remote at %s, parent %s)",
                path, WriteState.CONFLICT.value, remote[:12], base[:12] if base else "none",
            )
            if rebases > self.settings.max_sync_attempts:
                raise SyncConflict(
                    f"remote kept advancing; gave up after {rebases - 1} rebase(s)"
                )
            base = self._replay_onto(remote, local)
            commit = self._build_commit(base, changes, author.display_name, author.email, message)
            logger.debug("write %s: %s onto %s", path, WriteState.REBASED.value, base[:12])

        if expect_absent and base is not None and self._has_blob(base, path):
            raise PageExists(path)

        self._advance(local, commit)
        logger.info("write %s: %s %s by %s", path, WriteState.COMMITTED.value, commit[:12], author.email)
        return self._push_with_retry(commit, path=path, rebases=rebases)

    def _push_with_retry(self, commit: str, path: Optional[str], rebases: int) -> WriteResult:
        attempts = 0
        warning: Optional[str] = None
        bound = max(1, self.settings.push_attempts)

        while attempts < bound:
            attempts += 1
            try:
                self._push_once()
                logger.info("Pushed %s (attempt %d)", commit[:12], attempts)
                return WriteResult(
                    commit_id=commit,
                    state=WriteState.PUSHED,
                    path=path,
                    rebases=rebases,
                    push_attempts=attempts,
                )
            except _PushRejected as exc:
                warning = f"PushFailed: {exc}"
                logger.info("Push of %s rejected, remote moved on; rebasing", commit[:12])
                try:
                    remote = self._fetch()
                except SyncError as fetch_exc:
                    warning = f"{type(fetch_exc).__name__}: {fetch_exc}"
                else:
                    if remote is not None:
                        local = self.git.rev_parse(self.local_ref)
                        rebased = self._replay_onto(remote, local)
                        self._advance(local, rebased)
                        commit = rebased
                        rebases += 1
                    continue
            except SyncTimeout as exc:
                warning = f"SyncTimeout: {exc}"
                logger.warning("Push attempt %d timed out: %s", attempts, exc)
            except PushFailed as exc:
                warning = f"PushFailed: {exc}"
                logger.warning("Push attempt %d failed: %s", attempts, exc)

            if attempts < bound:
                self._sleep(self._backoff(attempts))

        logger.warning(
            "Commit %s saved locally but not pushed after %d attempts", commit[:12], attempts
        )
        return WriteResult(
            commit_id=commit,
            state=WriteState.PUSH_PENDING,
            path=path,
            rebases=rebases,
            push_attempts=attempts,
            warning=warning,
        )

    def _backoff(self, attempt: int) -> float:
        """Bounded exponential backoff shared by fetch and push retries."""
        return min(self.settings.backoff_max, self.settings.backoff_base * (2 ** (attempt - 1)))

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _fetch(self) -> Optional[str]:
        """Fetch the remote branch and return its tip (None if it is empty)."""
        result = self.git.network(
            "fetch", "--quiet", "origin",
            f"+{self.local_ref}:{self.remote_ref}",
            check=False,
        )
        if result.returncode != 0:
            if "couldn't find remote ref" in result.stderr.lower():
                return None
            raise SyncError(f"fetch failed: {result.stderr.strip()}")
        return self.git.rev_parse(self.remote_ref)

    def _push_once(self) -> None:
        result = self.git.network(
            "push", "--porcelain", "origin", f"{self.local_ref}:{self.local_ref}",
            check=False,
        )
        if result.returncode == 0:
            local = self.git.rev_parse(self.local_ref)
            if local:
                self.git.run("update-ref", self.remote_ref, local)
            return
        report = f"{result.stdout}\n{result.stderr}".lower()
        if any(marker in report for marker in _REJECTED_MARKERS):
            raise _PushRejected(result.stderr.strip() or result.stdout.strip())
        raise PushFailed(result.stderr.strip() or f"git push exited {result.returncode}")

    def _build_commit(
        self,
        parent: Optional[str],
        changes: Changes,
        author_name: str,
        author_email: str,
        message: str,
        author_date: Optional[str] = None,
    ) -> str:
        """Create a commit object for ``parent`` + ``changes``; move no refs."""
        with tempfile.TemporaryDirectory(prefix="gitalite-index-") as tmp:
            index_env = {"GIT_INDEX_FILE": str(Path(tmp) / "index")}
            if parent:
                self.git.run("read-tree", parent, env=index_env)
            else:
                self.git.run("read-tree", "--empty", env=index_env)

            entries = []
            for path, entry in changes.items():
                if entry is None:
                    entries.append(f"0 {ZERO_OID}\t{path}")
                else:
                    mode, oid = entry
                    entries.append(f"{mode} {oid}\t{path}")
            self.git.run("update-index", "--index-info", input="\n".join(entries) + "\n", env=index_env)
            tree = self.git.output("write-tree", env=index_env)

        commit_env = {
            "GIT_AUTHOR_NAME": author_name,
            "GIT_AUTHOR_EMAIL": author_email,
            "GIT_COMMITTER_NAME": self.committer[0],
            "GIT_COMMITTER_EMAIL": self.committer[1],
        }
        if author_date:
            commit_env["GIT_AUTHOR_DATE"] = author_date

        args = ["commit-tree", tree]
        if parent:
            args += ["-p", parent]
        return self.git.output(*args, input=message + "\n", env=commit_env)

    def _commit_changes(self, commit: str) -> Changes:
        """Paths a commit changed relative to its first parent."""
        out = self.git.run(
            "diff-tree", "-r", "-z", "--no-commit-id", "--no-renames", "--root", commit,
        ).stdout
        changes: Changes = {}
        fields = out.split("\x00")
        i = 0
        while i + 1 < len(fields):
            meta, path = fields[i], fields[i + 1]
            i += 2
            if not meta.startswith(":"):
                continue
            _, new_mode, _, new_oid, status = meta[1:].split(" ")
            changes[path] = None if status.startswith("D") else (new_mode, new_oid)
        return changes

    def _replay_onto(self, new_base: str, local: Optional[str]) -> str:
        """Re-apply unpushed local commits on top of ``new_base``.

        Changes are replayed file by file; the later write wins. Authors,
        dates, and messages are kept.

        Returns:
            The new head after replay (``new_base`` if nothing to replay).
        """
        if local is None or self.git.is_ancestor(local, new_base):
            return new_base

        ids = self.git.output("rev-list", "--reverse", "--topo-order", f"{new_base}..{local}").split()
        head = new_base
        for commit in ids:
            meta = self.git.output("log", "-1", "--format=%an%x1f%ae%x1f%aI%x1f%B", commit)
            name, email, date, body = (meta.split(_FIELD_SEP, 3) + [""] * 4)[:4]
            head = self._build_commit(
                head, self._commit_changes(commit), name, email, body.strip() or "(no message)",
                author_date=date,
            )
        logger.info("Replayed %d local commit(s) onto %s", len(ids), new_base[:12])
        return head

    def _advance(self, old: Optional[str], new: str) -> None:
        """Compare-and-swap the branch to ``new`` and publish it to readers."""
        try:
            self.git.run(
                "update-ref", "-m", "gitalite: commit", self.local_ref, new, old or ZERO_OID,
            )
        except GitCommandError as exc:
            raise SyncError(f"branch moved underneath the store: {exc}") from exc

        self._tip = new

        reset = self.git.run("reset", "--quiet", "--hard", new, check=False)
        if reset.returncode != 0:
            logger.warning("Working tree not refreshed: %s", reset.stderr.strip())
