"""Materialise a commit manifest, or one file of it, into the working tree."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Mapping

from chronovcs.errors import ConflictError, NotFoundError, ValidationError
from chronovcs.security.hasher import Hasher
from chronovcs.vcs.diff import DiffEngine
from chronovcs.vcs.fileio import atomic_write_bytes
from chronovcs.vcs.index import IndexEngine, normalize_path
from chronovcs.vcs.locking import repo_lock

if TYPE_CHECKING:
    from chronovcs.vcs.repo import RepoManager

logger = logging.getLogger(__name__)


def ensure_clean(repo: RepoManager) -> None:
    """Raise :class:`ConflictError` if the index or tracked files differ from HEAD."""
    status = DiffEngine(repo).status()
    if not (status.staged.is_empty and status.unstaged.is_empty):
        pending = sorted(set(status.staged.paths) | set(status.unstaged.paths))
        raise ConflictError(
            "Local changes would be overwritten: " + ", ".join(pending[:10])
        )


def materialize(
    repo: RepoManager,
    target: Mapping[str, str],
    previous: Mapping[str, str] | None = None,
) -> int:
    """Make the working tree and index match *target*.

    Files listed in *previous* but absent from *target* are removed.
    Files whose content already matches are not rewritten.  Returns the
    number of files written or removed.
    """
    previous = previous or {}
    touched = 0
    with repo_lock(repo.path):
        for path in sorted(set(previous) - set(target)):
            file_path = repo.path / path
            if file_path.is_file():
                file_path.unlink()
                touched += 1
                _prune_empty_dirs(repo, file_path.parent)

        for path, digest in sorted(target.items()):
            file_path = repo.path / path
            if file_path.is_file() and Hasher.hash_file(file_path) == digest:
                continue
            atomic_write_bytes(file_path, repo.objects.read_blob(digest))
            touched += 1

        IndexEngine(target).save(repo.path)

    logger.debug("Checked out %d file(s), %d changed", len(target), touched)
    return touched


def restore_file(repo: RepoManager, path: str | Path) -> str:
    """Overwrite one working-tree file with its content in the HEAD commit.

    The index is not touched.  Returns the normalised path.
    """
    rel = normalize_path(path)
    head = repo.head_commit()
    if head is None:
        raise ValidationError("Nothing to restore before the first commit.")
    digest = head.files.get(rel)
    if digest is None:
        raise NotFoundError(f"File '{rel}' is not in the HEAD commit.")
    with repo_lock(repo.path):
        atomic_write_bytes(repo.path / rel, repo.objects.read_blob(digest))
    logger.info("Restored %s from %s", rel, head.id[:7])
    return rel


def _prune_empty_dirs(repo: RepoManager, directory: Path) -> None:
    while directory != repo.path and directory.is_dir() and not any(directory.iterdir()):
        directory.rmdir()
        directory = directory.parent
