"""Tests for the git content store.

Covers:
- Path rules and mime inference (no git needed)
- Write validation happens before the store lock
- Read-after-write, revisions, existence checks
- Commit attribution (author = identity, committer = wiki)
- Concurrent writers produce a linear history
- History is lazy, pinned and restartable
- Remote advanced once -> one rebase, then pushed
- Push failures retried with backoff; exhaustion -> push_pending
- Fetch timeout -> committed locally, push_pending, later sync
- Create-only writes refuse pages that exist locally or on the remote
"""

from __future__ import annotations

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from gitalite.errors import NotFound, PageExists, PushFailed, SyncConflict, SyncTimeout, ValidationError
from gitalite.models import WriteState
from gitalite.gitcmd import git_available
from gitalite.store import GitContentStore, clean_path, infer_mime

requires_git = pytest.mark.skipif(not git_available(), reason="git executable not available")


# ---------------------------------------------------------------------------
# Path and mime rules
# ---------------------------------------------------------------------------


class TestCleanPath:
    """Tests for page path validation."""

    @pytest.mark.parametrize("path", [
        "index.md",
        "notes/a.txt",
        "deeply/nested/page.rst",
        "with space.md",
    ])
    def test_accepts_relative_paths(self, path):
        """Ordinary relative paths pass through unchanged."""
        assert clean_path(path) == path

    @pytest.mark.parametrize("path", [
        "",
        "   ",
        "/etc/passwd",
        "../escape.md",
        "notes/../../escape.md",
        "notes/./a.md",
        "notes//a.md",
        "notes/",
        ".git/config",
        "sub/.GIT/HEAD",
        "back\\slash.md",
        "nul\x00.md",
    ])
    def test_rejects_unsafe_paths(self, path):
        """Traversal, absolute, empty and .git paths are refused."""
        with pytest.raises(ValidationError):
            clean_path(path)

    def test_meta_prefix_is_reserved(self):
        """meta/ belongs to internal routes."""
        with pytest.raises(ValidationError, match="reserved"):
            clean_path("meta/page.md")

    def test_meta_prefix_allowed_for_reads(self):
        """Reads may still look at a meta/ file that exists in the repo."""
        assert clean_path("meta/page.md", allow_reserved=True) == "meta/page.md"


class TestInferMime:
    """Tests for extension-based mime inference."""

    def test_known_extensions(self):
        assert infer_mime("a.html") == "text/html"
        assert infer_mime("pic.png") == "image/png"

    def test_unknown_extension_is_plain_text(self):
        assert infer_mime("README") == "text/plain"
        assert infer_mime("notes/thing.unknownext") == "text/plain"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@requires_git
class TestWriteValidation:
    """Bad writes fail fast, before the lock is taken."""

    def test_mime_must_match_extension(self, store, editor_identity):
        with pytest.raises(ValidationError, match="does not match"):
            store.write("notes/a.txt", b"x", "text/html", editor_identity, "msg")

    def test_non_text_mime_needs_allow_list(self, store, editor_identity):
        with pytest.raises(ValidationError, match="not allowed"):
            store.write("pic.png", b"\x89PNG", "image/png", editor_identity, "upload")

    def test_allowed_non_text_mime_is_accepted(self, store, editor_identity):
        store.allowed_mime_types = {"image/png"}
        result = store.write("pic.png", b"\x89PNG", "image/png", editor_identity, "upload")
        assert result.state == WriteState.PUSHED
        assert store.read("pic.png") == b"\x89PNG"

    def test_mime_parameters_ignored(self, store, editor_identity):
        result = store.write("notes/a.txt", b"x", "text/plain; charset=utf-8", editor_identity, "m")
        assert result.state == WriteState.PUSHED

    def test_empty_message_rejected(self, store, editor_identity):
        with pytest.raises(ValidationError):
            store.write("notes/a.txt", b"x", "text/plain", editor_identity, "   ")

    def test_missing_identity_rejected(self, store):
        with pytest.raises(ValidationError, match="identity"):
            store.write("notes/a.txt", b"x", "text/plain", None, "msg")

    def test_rejected_while_lock_is_held(self, store, editor_identity):
        """A disallowed mime is refused even while another write holds the lock."""
        errors = []

        def attempt():
            try:
                store.write("pic.png", b"x", "image/png", editor_identity, "upload")
            except ValidationError as exc:
                errors.append(exc)

        with store._lock:
            t = threading.Thread(target=attempt)
            t.start()
            t.join(timeout=10)
            assert not t.is_alive()
        assert len(errors) == 1

    def test_reserved_path_rejected(self, store, editor_identity):
        with pytest.raises(ValidationError):
            store.write("meta/x.md", b"x", "text/markdown", editor_identity, "msg")


# ---------------------------------------------------------------------------
# Reads and writes
# ---------------------------------------------------------------------------


@requires_git
class TestReadWrite:
    """Tests for the basic write -> read cycle."""

    def test_read_existing_page(self, store):
        assert store.read("index.md") == b"# Welcome\n"
        assert store.exists("index.md")

    def test_read_missing_page(self, store):
        assert not store.exists("nope.md")
        with pytest.raises(NotFound):
            store.read("nope.md")

    def test_directory_is_not_a_page(self, store, editor_identity):
        store.write("notes/a.txt", b"a", "text/plain", editor_identity, "a")
        assert not store.exists("notes")

    def test_read_after_write(self, store, editor_identity):
        data = "héllo wörld\n".encode("utf-8")
        result = store.write("notes/a.txt", data, "text/plain", editor_identity, "[create] notes/a.txt")

        assert result.state == WriteState.PUSHED
        assert result.synchronized
        assert result.rebases == 0
        assert result.push_attempts == 1
        assert store.read("notes/a.txt") == data
        assert store.tip == result.commit_id

    def test_working_tree_follows_tip(self, store, editor_identity):
        store.write("notes/a.txt", b"on disk", "text/plain", editor_identity, "m")
        assert (store.directory / "notes" / "a.txt").read_bytes() == b"on disk"

    def test_commit_attributed_to_identity(self, store, editor_identity, git):
        result = store.write("notes/a.txt", b"a", "text/plain", editor_identity, "[create] notes/a.txt")
        fields = git(store.directory, "log", "-1", "--format=%an|%ae|%cn|%ce|%s", result.commit_id)
        assert fields == "Ada|ada@example.com|gitalite|wiki@example.com|[create] notes/a.txt"

    def test_remote_receives_commit(self, store, remote, editor_identity, git):
        result = store.write("notes/a.txt", b"a", "text/plain", editor_identity, "m")
        assert git(remote, "rev-parse", "refs/heads/main") == result.commit_id
        assert store.pending_count() == 0

    def test_update_keeps_other_files(self, store, editor_identity):
        store.write("notes/a.txt", b"a", "text/plain", editor_identity, "a")
        store.write("notes/b.txt", b"b", "text/plain", editor_identity, "b")
        store.write("notes/a.txt", b"a2", "text/plain", editor_identity, "a2")
        assert store.read("notes/a.txt") == b"a2"
        assert store.read("notes/b.txt") == b"b"
        assert store.read("index.md") == b"# Welcome\n"

    def test_create_only_refuses_existing_page(self, store, editor_identity):
        tip = store.tip
        with pytest.raises(PageExists):
            store.write("index.md", b"# Again\n", infer_mime("index.md"), editor_identity, "m",
                        expect_absent=True)
        assert store.tip == tip
        assert store.read("index.md") == b"# Welcome\n"

    def test_create_only_new_page(self, store, editor_identity):
        result = store.write("notes/a.txt", b"a", "text/plain", editor_identity, "a", expect_absent=True)
        assert result.state == WriteState.PUSHED
        assert store.read("notes/a.txt") == b"a"

    def test_read_at_revision(self, store, editor_identity):
        first = store.write("notes/a.txt", b"v1", "text/plain", editor_identity, "v1")
        store.write("notes/a.txt", b"v2", "text/plain", editor_identity, "v2")
        assert store.read("notes/a.txt", revision=first.commit_id) == b"v1"
        assert store.read("notes/a.txt", revision=first.commit_id[:10]) == b"v1"

    def test_read_bad_revision(self, store):
        with pytest.raises(ValidationError):
            store.read("index.md", revision="HEAD~1; rm -rf")
        with pytest.raises(NotFound):
            store.read("index.md", revision="0" * 40)

    def test_reopen_existing_working_copy(self, store, tmp_path, sync_settings, editor_identity):
        result = store.write("notes/a.txt", b"a", "text/plain", editor_identity, "a")
        reopened = GitContentStore(tmp_path / "pages", settings=sync_settings)
        assert reopened.tip == result.commit_id
        assert reopened.read("notes/a.txt") == b"a"

    def test_missing_directory_without_remote(self, tmp_path):
        with pytest.raises(ValidationError):
            GitContentStore(tmp_path / "nowhere")


@requires_git
class TestEmptyRemote:
    """A brand new wiki starts from an empty repository."""

    def test_first_write_creates_root_commit(self, tmp_path, empty_remote, sync_settings, editor_identity, git):
        store = GitContentStore(tmp_path / "pages", remote_url=str(empty_remote), settings=sync_settings)
        assert store.tip is None
        assert not store.exists("index.md")
        assert list(store.history("index.md")) == []

        result = store.write("index.md", b"# Hi\n", infer_mime("index.md"), editor_identity, "[create] index.md")

        assert result.state == WriteState.PUSHED
        assert git(empty_remote, "rev-parse", "refs/heads/main") == result.commit_id
        assert git(store.directory, "rev-list", "--count", result.commit_id) == "1"

    def test_remote_filled_before_first_write(self, tmp_path, empty_remote, sync_settings, editor_identity, git):
        """Cloned empty, then another writer pushes first: rebase onto theirs."""
        store = GitContentStore(tmp_path / "pages", remote_url=str(empty_remote), settings=sync_settings)
        assert store.tip is None

        other = tmp_path / "other"
        git(tmp_path, "clone", "--quiet", str(empty_remote), str(other))
        (other / "index.md").write_text("# Theirs\n", encoding="utf-8")
        git(other, "add", "index.md")
        git(other, "commit", "--quiet", "-m", "[create] index.md")
        git(other, "push", "--quiet", "origin", "HEAD:refs/heads/main")
        theirs = git(other, "rev-parse", "HEAD")

        result = store.write("notes/a.txt", b"hello", "text/plain", editor_identity, "[create] notes/a.txt")

        assert result.state == WriteState.PUSHED
        assert result.rebases == 1
        assert store.read("index.md") == b"# Theirs\n"
        assert store.read("notes/a.txt") == b"hello"
        assert git(empty_remote, "rev-parse", "refs/heads/main") == result.commit_id
        assert git(store.directory, "rev-list", "--parents", "-n", "1", result.commit_id).split()[1:] == [theirs]
        assert git(store.directory, "rev-list", "--count", result.commit_id) == "2"

    def test_create_only_on_empty_remote(self, tmp_path, empty_remote, sync_settings, editor_identity):
        store = GitContentStore(tmp_path / "pages", remote_url=str(empty_remote), settings=sync_settings)
        result = store.write("index.md", b"# Hi\n", infer_mime("index.md"), editor_identity, "first",
                             expect_absent=True)
        assert result.state == WriteState.PUSHED


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@requires_git
class TestConcurrentWriters:
    """Writers are serialized into one linear chain."""

    def test_two_writers_linear_history(self, store, editor_identity, seed_identity, git):
        before = int(git(store.directory, "rev-list", "--count", "HEAD"))
        results = []
        errors = []

        def writer(identity, path):
            try:
                results.append(store.write(path, path.encode(), "text/plain", identity, f"write {path}"))
            except Exception as exc:  # surfaced by the assertion below
                errors.append(exc)

        threads = [
            threading.Thread(target=writer, args=(editor_identity, "notes/one.txt")),
            threading.Thread(target=writer, args=(seed_identity, "notes/two.txt")),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert errors == []
        assert all(r.state == WriteState.PUSHED for r in results)
        assert store.read("notes/one.txt") == b"notes/one.txt"
        assert store.read("notes/two.txt") == b"notes/two.txt"
        assert git(store.directory, "rev-list", "--merges", "HEAD") == ""
        assert int(git(store.directory, "rev-list", "--count", "HEAD")) == before + 2

        authors = git(store.directory, "log", "-2", "--format=%ae").split()
        assert sorted(authors) == ["ada@example.com", "callym@example.com"]


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@requires_git
class TestHistory:
    """Tests for lazy page history."""

    def test_history_newest_first(self, store, editor_identity):
        store.write("notes/a.txt", b"1", "text/plain", editor_identity, "first")
        store.write("notes/b.txt", b"x", "text/plain", editor_identity, "other file")
        store.write("notes/a.txt", b"2", "text/plain", editor_identity, "second")

        commits = list(store.history("notes/a.txt"))
        assert [c.message for c in commits] == ["second", "first"]
        assert commits[0].author_email == "ada@example.com"
        assert commits[0].files == ["notes/a.txt"]
        assert commits[0].parents

    def test_history_is_restartable(self, store, editor_identity):
        store.write("notes/a.txt", b"1", "text/plain", editor_identity, "first")
        history = store.history("notes/a.txt")
        assert list(history) == list(history)

    def test_history_pinned_to_tip(self, store, editor_identity):
        store.write("notes/a.txt", b"1", "text/plain", editor_identity, "first")
        history = store.history("notes/a.txt")
        store.write("notes/a.txt", b"2", "text/plain", editor_identity, "second")
        assert [c.message for c in history] == ["first"]
        assert len(list(store.history("notes/a.txt"))) == 2

    def test_history_stops_early(self, store, editor_identity):
        for i in range(3):
            store.write("notes/a.txt", str(i).encode(), "text/plain", editor_identity, f"rev {i}")
        first = next(iter(store.history("notes/a.txt")))
        assert first.message == "rev 2"

    def test_history_by_author(self, store, editor_identity, seed_identity):
        store.write("notes/a.txt", b"1", "text/plain", editor_identity, "by ada")
        store.write("notes/b.txt", b"1", "text/plain", seed_identity, "by callym")
        store.write("notes/c.txt", b"1", "text/plain", editor_identity, "by ada again")

        commits = list(store.history_by_author("ADA@example.com", limit=10))
        assert [c.message for c in commits] == ["by ada again", "by ada"]
        assert len(list(store.history_by_author("ada@example.com", limit=1))) == 1

    def test_resolve_author(self, store, vault, seed_identity):
        seed_commit = next(iter(store.history("index.md")))
        author = store.resolve_author(seed_commit, vault)
        assert not author.is_known
        assert author.email == "other@example.com"

        store.write("notes/a.txt", b"1", "text/plain", seed_identity, "mine")
        mine = next(iter(store.history("notes/a.txt")))
        author = store.resolve_author(mine, vault)
        assert author.is_known
        assert author.identity.profile_url == seed_identity.profile_url


# ---------------------------------------------------------------------------
# Synchronization
# ---------------------------------------------------------------------------


@requires_git
class TestRemoteAdvanced:
    """The remote moved on between clone and write."""

    def test_one_rebase_then_pushed(self, store, remote, tmp_path, editor_identity, git, push_elsewhere):
        other = push_elsewhere("other", "elsewhere.md", "from elsewhere\n")

        result = store.write("notes/a.txt", b"mine", "text/plain", editor_identity, "[create] notes/a.txt")

        assert result.state == WriteState.PUSHED
        assert result.rebases == 1
        assert store.read("notes/a.txt") == b"mine"
        assert store.read("elsewhere.md") == b"from elsewhere\n"
        assert git(store.directory, "rev-parse", f"{result.commit_id}^") == other
        assert git(remote, "rev-parse", "refs/heads/main") == result.commit_id

    def test_remote_moves_during_push(self, store, remote, tmp_path, editor_identity, git, push_elsewhere):
        """A non-fast-forward rejection triggers a replay and another push."""
        real_push = store._push_once
        calls = []

        def racing_push():
            if not calls:
                push_elsewhere("racer", "race.md", "raced\n")
            calls.append(1)
            real_push()

        with patch.object(store, "_push_once", side_effect=racing_push):
            result = store.write("notes/a.txt", b"mine", "text/plain", editor_identity, "m")

        assert result.state == WriteState.PUSHED
        assert result.push_attempts == 2
        assert result.rebases == 1
        assert store.read("race.md") == b"raced\n"
        assert store.read("notes/a.txt") == b"mine"
        assert git(remote, "rev-parse", "refs/heads/main") == store.tip
        fields = git(remote, "log", "-1", "--format=%an|%s", "refs/heads/main")
        assert fields == "Ada|m"

    def test_remote_never_settles(self, store, remote, tmp_path, editor_identity, push_elsewhere):
        """Giving up after the bound leaves nothing committed."""
        push_elsewhere("other", "elsewhere.md", "x\n")
        remote_tip = store._fetch()
        tip_before = store.tip

        with patch.object(store, "_fetch", return_value=remote_tip), \
                patch.object(store, "_replay_onto", side_effect=lambda new_base, local: local):
            with pytest.raises(SyncConflict):
                store.write("notes/a.txt", b"mine", "text/plain", editor_identity, "m")

        assert store.tip == tip_before
        assert not store.exists("notes/a.txt")
        assert store.pending_count() == 0

    def test_create_only_sees_remote_page(self, store, remote, editor_identity, git, push_elsewhere):
        """A page created elsewhere since the last sync is not overwritten."""
        push_elsewhere("other", "notes/a.txt", "theirs\n")
        tip_before = store.tip

        with pytest.raises(PageExists):
            store.write("notes/a.txt", b"mine", "text/plain", editor_identity, "m", expect_absent=True)

        assert store.tip == tip_before
        assert git(remote, "show", "refs/heads/main:notes/a.txt") == "theirs"
        assert store.pending_count() == 0


@requires_git
class TestPushRetry:
    """Push retries with bounded backoff."""

    def test_three_failures_then_pushed(self, store, remote, editor_identity, git):
        before = int(git(remote, "rev-list", "--count", "refs/heads/main"))
        real_push = store._push_once
        failures = [PushFailed("connection reset")] * 3
        sleeps = []
        store._sleep = sleeps.append

        def flaky_push():
            if failures:
                raise failures.pop()
            real_push()

        with patch.object(store, "_push_once", side_effect=flaky_push):
            result = store.write("notes/a.txt", b"a", "text/plain", editor_identity, "m")

        assert result.state == WriteState.PUSHED
        assert result.push_attempts == 4
        assert len(sleeps) == 3
        assert int(git(remote, "rev-list", "--count", "refs/heads/main")) == before + 1
        assert git(remote, "rev-parse", "refs/heads/main") == result.commit_id

    def test_backoff_is_bounded_exponential(self, store):
        store.settings = store.settings.model_copy(update={"backoff_base": 0.5, "backoff_max": 3.0})
        assert [store._backoff(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    def test_exhausted_push_is_pending(self, store, remote, editor_identity, git):
        remote_before = git(remote, "rev-parse", "refs/heads/main")

        with patch.object(store, "_push_once", side_effect=PushFailed("remote hung up")):
            result = store.write("notes/a.txt", b"a", "text/plain", editor_identity, "m")

        assert result.state == WriteState.PUSH_PENDING
        assert not result.synchronized
        assert result.push_attempts == store.settings.push_attempts
        assert result.warning.startswith("PushFailed")
        assert store.read("notes/a.txt") == b"a"
        assert store.pending_count() == 1
        assert git(remote, "rev-parse", "refs/heads/main") == remote_before

        retried = store.push()
        assert retried.state == WriteState.PUSHED
        assert store.pending_count() == 0

    def test_push_timeout_is_reported(self, store, editor_identity):
        with patch.object(store, "_push_once", side_effect=SyncTimeout("timed out")):
            result = store.write("notes/a.txt", b"a", "text/plain", editor_identity, "m")
        assert result.state == WriteState.PUSH_PENDING
        assert result.warning.startswith("SyncTimeout")

    def test_push_with_nothing_pending(self, store):
        assert store.push() is None


@requires_git
class TestFetchFailure:
    """An unreachable remote never loses a write."""

    def test_fetch_timeout_commits_locally(self, store, remote, editor_identity, git):
        remote_before = git(remote, "rev-parse", "refs/heads/main")

        with patch.object(store, "_fetch", side_effect=SyncTimeout("git fetch timed out after 30s")):
            result = store.write("notes/a.txt", b"kept", "text/plain", editor_identity, "m")

        assert result.state == WriteState.PUSH_PENDING
        assert result.warning.startswith("SyncTimeout")
        assert store.read("notes/a.txt") == b"kept"
        assert store.pending_count() == 1
        assert git(remote, "rev-parse", "refs/heads/main") == remote_before

    def test_pending_commits_replayed_after_remote_moved(self, store, remote, tmp_path, editor_identity, git, push_elsewhere):
        with patch.object(store, "_fetch", side_effect=SyncTimeout("down")):
            store.write("notes/a.txt", b"offline", "text/plain", editor_identity, "offline edit")

        push_elsewhere("other", "elsewhere.md", "x\n")
        result = store.write("notes/b.txt", b"online", "text/plain", editor_identity, "online edit")

        assert result.state == WriteState.PUSHED
        assert store.pending_count() == 0
        messages = git(remote, "log", "-3", "--format=%s", "refs/heads/main").splitlines()
        assert messages == ["online edit", "offline edit", "[update] elsewhere.md"]
        assert store.read("notes/a.txt") == b"offline"
        assert store.read("elsewhere.md") == b"x\n"

    def test_unreachable_remote(self, store, editor_identity, git):
        git(store.directory, "remote", "set-url", "origin", str(Path(store.directory).parent / "gone.git"))
        result = store.write("notes/a.txt", b"a", "text/plain", editor_identity, "m")
        assert result.state == WriteState.PUSH_PENDING
        assert "fetch failed" in result.warning
