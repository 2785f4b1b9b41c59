"""DiffEngine — compare working tree, index, and commits.

Three comparisons are offered, all returning a :class:`DiffResult`
sorted by path:

* working tree vs index (what ``stage`` would record),
* index vs HEAD commit (what ``commit`` would record),
* commit vs commit.

Files are compared by content digest only; timestamps and permissions
play no part.
"""

from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Mapping, Optional

from chronovcs.security.hasher import Hasher
from chronovcs.vcs.staging import walk_working_tree

if TYPE_CHECKING:
    from chronovcs.vcs.repo import RepoManager

logger = logging.getLogger(__name__)

BINARY_HUNK = "Binary file differs"


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass
class FileDiff:
    """Change to one path."""

    path: str
    change_type: ChangeType
    hunks: list[str] = field(default_factory=list)

    @property
    def is_binary(self) -> bool:
        return self.hunks == [BINARY_HUNK]


@dataclass
class DiffStats:
    added: int = 0
    modified: int = 0
    deleted: int = 0

    @property
    def total(self) -> int:
        return self.added + self.modified + self.deleted


@dataclass
class DiffResult:
    files: list[FileDiff] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.files

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]

    @property
    def stats(self) -> DiffStats:
        stats = DiffStats()
        for f in self.files:
            if f.change_type is ChangeType.ADDED:
                stats.added += 1
            elif f.change_type is ChangeType.MODIFIED:
                stats.modified += 1
            else:
                stats.deleted += 1
        return stats

    def by_type(self, change_type: ChangeType) -> list[FileDiff]:
        return [f for f in self.files if f.change_type is change_type]


@dataclass
class StatusResult:
    """Working-tree status split the way users read it."""

    branch: Optional[str]
    staged: DiffResult
    unstaged: DiffResult
    untracked: list[str]

    @property
    def is_clean(self) -> bool:
        return self.staged.is_empty and self.unstaged.is_empty and not self.untracked


def _decode(data: bytes) -> str | None:
    if b"\0" in data:
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


def render_hunks(path: str, old: bytes | None, new: bytes | None) -> list[str]:
    """Unified-diff body lines between *old* and *new* (None = absent).

    Binary content on either side collapses to a single marker line.
    """
    old_text = _decode(old) if old is not None else ""
    new_text = _decode(new) if new is not None else ""
    if old_text is None or new_text is None:
        return [BINARY_HUNK]
    lines = difflib.unified_diff(
        old_text.splitlines(),
        new_text.splitlines(),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
        lineterm="",
        n=3,
    )
    return [line for line in lines if not line.startswith(("---", "+++"))]


def compare_manifests(
    old: Mapping[str, str],
    new: Mapping[str, str],
    read_old: Callable[[str], bytes | None],
    read_new: Callable[[str], bytes | None],
) -> DiffResult:
    """Classify every path in *old* or *new* and render hunks.

    ``read_old``/``read_new`` receive a path and return its content on
    that side.
    """
    files: list[FileDiff] = []
    for path in sorted(set(old) | set(new)):
        before = old.get(path)
        after = new.get(path)
        if before == after:
            continue
        if before is None:
            change = ChangeType.ADDED
            hunks = render_hunks(path, None, read_new(path))
        elif after is None:
            change = ChangeType.DELETED
            hunks = render_hunks(path, read_old(path), None)
        else:
            change = ChangeType.MODIFIED
            hunks = render_hunks(path, read_old(path), read_new(path))
        files.append(FileDiff(path, change, hunks))
    return DiffResult(files)


def _blob_reader(repo: RepoManager, manifest: Mapping[str, str]) -> Callable[[str], bytes | None]:
    def read(path: str) -> bytes | None:
        digest = manifest.get(path)
        return repo.objects.read_blob(digest) if digest else None
    return read


def _working_reader(repo: RepoManager) -> Callable[[str], bytes | None]:
    def read(path: str) -> bytes | None:
        target = repo.path / path
        return target.read_bytes() if target.is_file() else None
    return read


def working_manifest(repo: RepoManager, tracked: Mapping[str, str]) -> dict[str, str]:
    """Digest every visible file, plus tracked files even when now ignored."""
    working: dict[str, str] = {}
    for path in walk_working_tree(repo):
        working[path] = Hasher.hash_file(repo.path / path)
    for path in tracked:
        if path not in working and (repo.path / path).is_file():
            working[path] = Hasher.hash_file(repo.path / path)
    return working


class DiffEngine:
    """Diffs over one repository.

    Parameters
    ----------
    repo:
        The repository whose working tree, index, and commits are compared.
    """

    def __init__(self, repo: RepoManager) -> None:
        self.repo = repo

    def _repo_for(self, repo_root: str | Path | None) -> RepoManager:
        if repo_root is None or Path(repo_root).resolve() == self.repo.path:
            return self.repo
        return type(self.repo)(repo_root, ignore=self.repo.ignore)

    def diff_working_vs_staged(self, repo_root: str | Path | None = None) -> DiffResult:
        """Working tree against the index.

        Untracked files show up as ADDED, tracked files missing from disk
        as DELETED.
        """
        repo = self._repo_for(repo_root)
        staged = repo.load_index().snapshot()
        working = working_manifest(repo, staged)
        return compare_manifests(staged, working, _blob_reader(repo, staged), _working_reader(repo))

    def diff_staged_vs_head(self, repo_root: str | Path | None = None) -> DiffResult:
        """Index against the HEAD commit (everything is ADDED before the first commit)."""
        repo = self._repo_for(repo_root)
        head = repo.head_commit()
        head_files = dict(head.files) if head else {}
        staged = repo.load_index().snapshot()
        return compare_manifests(
            head_files, staged, _blob_reader(repo, head_files), _blob_reader(repo, staged),
        )

    def diff_commits(self, old_id: str | None, new_id: str) -> DiffResult:
        """Manifest of *old_id* (None = empty) against that of *new_id*."""
        old_files = dict(self.repo.commits.load(old_id).files) if old_id else {}
        new_files = dict(self.repo.commits.load(new_id).files)
        return compare_manifests(
            old_files, new_files,
            _blob_reader(self.repo, old_files), _blob_reader(self.repo, new_files),
        )

    def status(self) -> StatusResult:
        working = self.diff_working_vs_staged()
        return StatusResult(
            branch=self.repo.current_branch(),
            staged=self.diff_staged_vs_head(),
            unstaged=DiffResult(
                [f for f in working.files if f.change_type is not ChangeType.ADDED]
            ),
            untracked=[f.path for f in working.by_type(ChangeType.ADDED)],
        )

    def has_pending_changes(self) -> bool:
        """True when the index or any tracked file differs from HEAD."""
        status = self.status()
        return not (status.staged.is_empty and status.unstaged.is_empty)
