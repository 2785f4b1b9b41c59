"""Tests for DiffEngine comparisons and working-tree status."""

from __future__ import annotations

from pathlib import Path

from chronovcs.vcs.diff import BINARY_HUNK, ChangeType, DiffEngine, render_hunks
from chronovcs.vcs.repo import RepoManager

AUTHOR = "Ada <ada@example.com>"


def _make_repo(tmp_path: Path) -> RepoManager:
    repo = RepoManager(tmp_path / "repo")
    repo.init_repo()
    return repo


def _write(repo: RepoManager, rel: str, content: str | bytes) -> None:
    target = repo.path / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        target.write_bytes(content)
    else:
        target.write_text(content, encoding="utf-8")


def _commit_all(repo: RepoManager, message: str):
    repo.stage()
    return repo.commit(message, author=AUTHOR)


# ---------------------------------------------------------------------------
# Hunk rendering
# ---------------------------------------------------------------------------


class TestRenderHunks:
    def test_text_change(self):
        hunks = render_hunks("a.txt", b"hello\n", b"hello world\n")
        assert hunks == ["@@ -1 +1 @@", "-hello", "+hello world"]

    def test_added_file(self):
        assert render_hunks("a.txt", None, b"x\ny\n") == ["@@ -0,0 +1,2 @@", "+x", "+y"]

    def test_binary_marker(self):
        assert render_hunks("img.bin", b"\x00\x01", b"\x00\x02") == [BINARY_HUNK]

    def test_invalid_utf8_is_binary(self):
        assert render_hunks("a.txt", b"ok", b"\xff\xfe") == [BINARY_HUNK]


# ---------------------------------------------------------------------------
# Working tree vs index
# ---------------------------------------------------------------------------


class TestWorkingVsStaged:
    def test_modified_file(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "a.txt", "hello\n")
        _commit_all(repo, "init")
        _write(repo, "a.txt", "hello world\n")

        result = DiffEngine(repo).diff_working_vs_staged()
        assert result.paths == ["a.txt"]
        diff = result.files[0]
        assert diff.change_type is ChangeType.MODIFIED
        assert "-hello" in diff.hunks
        assert "+hello world" in diff.hunks

    def test_clean_tree_is_empty(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "a.txt", "hello\n")
        _commit_all(repo, "init")
        engine = DiffEngine(repo)
        assert engine.diff_working_vs_staged().is_empty
        assert engine.diff_staged_vs_head().is_empty

    def test_added_and_deleted(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "old.txt", "old\n")
        _commit_all(repo, "init")
        (repo.path / "old.txt").unlink()
        _write(repo, "new.txt", "new\n")

        result = DiffEngine(repo).diff_working_vs_staged()
        assert [(f.path, f.change_type) for f in result.files] == [
            ("new.txt", ChangeType.ADDED),
            ("old.txt", ChangeType.DELETED),
        ]
        assert result.stats.added == 1
        assert result.stats.deleted == 1
        assert result.stats.total == 2

    def test_ignored_files_do_not_appear(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, ".chronoignore", "*.log\n")
        _commit_all(repo, "init")
        _write(repo, "debug.log", "noise")
        assert DiffEngine(repo).diff_working_vs_staged().is_empty

    def test_binary_file(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "blob.bin", b"\x00\x01\x02")
        _commit_all(repo, "init")
        _write(repo, "blob.bin", b"\x00\x01\x03")

        diff = DiffEngine(repo).diff_working_vs_staged().files[0]
        assert diff.change_type is ChangeType.MODIFIED
        assert diff.is_binary

    def test_explicit_repo_root(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "a.txt", "x")
        result = DiffEngine(repo).diff_working_vs_staged(repo_root=repo.path)
        assert result.paths == ["a.txt"]


# ---------------------------------------------------------------------------
# Index vs HEAD and commit vs commit
# ---------------------------------------------------------------------------


class TestStagedAndCommits:
    def test_everything_added_before_first_commit(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "a.txt", "a\n")
        _write(repo, "b.txt", "b\n")
        repo.stage()
        result = DiffEngine(repo).diff_staged_vs_head()
        assert [f.change_type for f in result.files] == [ChangeType.ADDED, ChangeType.ADDED]

    def test_staged_modification(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "a.txt", "hello\n")
        _commit_all(repo, "init")
        _write(repo, "a.txt", "hello world\n")
        repo.stage("a.txt")

        engine = DiffEngine(repo)
        assert engine.diff_working_vs_staged().is_empty
        staged = engine.diff_staged_vs_head()
        assert staged.paths == ["a.txt"]
        assert staged.files[0].change_type is ChangeType.MODIFIED

    def test_commit_diff_is_symmetric(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "a.txt", "one\n")
        first = _commit_all(repo, "first")
        _write(repo, "b.txt", "two\n")
        second = _commit_all(repo, "second")

        engine = DiffEngine(repo)
        forward = engine.diff_commits(first.id, second.id)
        backward = engine.diff_commits(second.id, first.id)
        assert [(f.path, f.change_type) for f in forward.files] == [("b.txt", ChangeType.ADDED)]
        assert [(f.path, f.change_type) for f in backward.files] == [("b.txt", ChangeType.DELETED)]
        assert engine.diff_commits(first.id, first.id).is_empty

    def test_diff_from_empty(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "a.txt", "one\n")
        first = _commit_all(repo, "first")
        result = DiffEngine(repo).diff_commits(None, first.id)
        assert result.by_type(ChangeType.ADDED)[0].hunks == ["@@ -0,0 +1 @@", "+one"]


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class TestStatus:
    def test_status_groups(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "tracked.txt", "v1\n")
        _write(repo, "staged.txt", "s1\n")
        _commit_all(repo, "init")

        _write(repo, "tracked.txt", "v2\n")
        _write(repo, "staged.txt", "s2\n")
        repo.stage("staged.txt")
        _write(repo, "untracked.txt", "u\n")

        status = DiffEngine(repo).status()
        assert status.branch == "main"
        assert status.staged.paths == ["staged.txt"]
        assert status.unstaged.paths == ["tracked.txt"]
        assert status.untracked == ["untracked.txt"]
        assert not status.is_clean

    def test_clean_status(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "a.txt", "a\n")
        _commit_all(repo, "init")
        engine = DiffEngine(repo)
        assert engine.status().is_clean
        assert not engine.has_pending_changes()

    def test_untracked_is_not_pending(self, tmp_path: Path):
        repo = _make_repo(tmp_path)
        _write(repo, "a.txt", "a\n")
        _commit_all(repo, "init")
        _write(repo, "new.txt", "n\n")
        assert not DiffEngine(repo).has_pending_changes()
