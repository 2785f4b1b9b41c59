"""Staging — copy working-tree files into the object store and index.

Staging a directory walks it, skipping ignored entries.  Staging the path
of a tracked file that no longer exists removes it from the index.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Iterator

from chronovcs.errors import ValidationError
from chronovcs.vcs.ignore import relative_posix
from chronovcs.vcs.index import IndexEngine
from chronovcs.vcs.locking import repo_lock

if TYPE_CHECKING:
    from chronovcs.vcs.repo import RepoManager

logger = logging.getLogger(__name__)


def walk_working_tree(repo: RepoManager, start: Path | None = None) -> Iterator[str]:
    """Yield relative paths of non-ignored files below *start* (default: root)."""
    root = repo.path
    base = start or root
    for dirpath, dirnames, filenames in os.walk(base):
        current = Path(dirpath)
        dirnames[:] = sorted(
            d for d in dirnames
            if not repo.ignore.is_ignored(root, current / d)
        )
        for name in sorted(filenames):
            full = current / name
            if full.is_symlink() or not full.is_file():
                continue
            if repo.ignore.is_ignored(root, full):
                continue
            rel = relative_posix(root, full)
            if rel:
                yield rel


def _resolve_targets(repo: RepoManager, paths: Iterable[str | Path]) -> list[Path]:
    targets: list[Path] = []
    for raw in paths:
        candidate = Path(raw)
        if not candidate.is_absolute():
            candidate = repo.path / candidate
        if relative_posix(repo.path, candidate) is None:
            raise ValidationError(f"Path is outside the repository: {raw}")
        targets.append(candidate)
    return targets


def stage_paths(repo: RepoManager, paths: Iterable[str | Path]) -> list[str]:
    """Stage files and directories; returns the relative paths that changed.

    Blobs are written before the index is saved, so the index never
    names a digest the object store lacks.
    """
    repo.require_repo()
    targets = _resolve_targets(repo, paths) or [repo.path]
    changed: list[str] = []

    with repo_lock(repo.path):
        index = repo.load_index()
        for target in targets:
            rel = relative_posix(repo.path, target)
            if target.is_dir():
                prefix = f"{rel}/" if rel else ""
                for file_rel in walk_working_tree(repo, target):
                    if _stage_file(repo, index, file_rel):
                        changed.append(file_rel)
                for tracked in list(index.entries()):
                    if tracked.startswith(prefix) and not (repo.path / tracked).is_file():
                        index.remove(tracked)
                        changed.append(tracked)
            elif target.is_file():
                if repo.ignore.is_ignored(repo.path, target):
                    logger.debug("Skipping ignored path %s", rel)
                    continue
                if _stage_file(repo, index, rel):
                    changed.append(rel)
            elif rel and rel in index:
                index.remove(rel)
                changed.append(rel)
            else:
                raise ValidationError(f"Path does not exist: {rel or target}")
        index.save(repo.path)

    logger.info("Staged %d path(s)", len(changed))
    return sorted(set(changed))


def _stage_file(repo: RepoManager, index: IndexEngine, rel: str) -> bool:
    digest = repo.objects.write_blob(repo.path / rel)
    if index.get(rel) == digest:
        return False
    index.update(rel, digest)
    return True


def unstage_paths(repo: RepoManager, paths: Iterable[str | Path]) -> list[str]:
    """Reset the given index entries to their state in HEAD."""
    repo.require_repo()
    head = repo.head_commit()
    head_files = head.files if head else {}
    removed: list[str] = []

    with repo_lock(repo.path):
        index = repo.load_index()
        for target in _resolve_targets(repo, paths):
            rel = relative_posix(repo.path, target) or ""
            prefix = f"{rel}/" if rel else ""
            matches = [p for p in list(index.entries()) if p == rel or p.startswith(prefix)]
            for path in matches:
                if path in head_files:
                    if index.get(path) != head_files[path]:
                        index.update(path, head_files[path])
                        removed.append(path)
                else:
                    index.remove(path)
                    removed.append(path)
            for path in head_files:
                if (path == rel or path.startswith(prefix)) and path not in index:
                    index.update(path, head_files[path])
                    removed.append(path)
        index.save(repo.path)

    return sorted(set(removed))
