"""IndexEngine — the staging area mapping tracked paths to blob digests.

Persisted as ``.vcs/index.json``::

    {"files": {"src/app.py": "<sha256>", ...}}
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Mapping, NamedTuple

from chronovcs.config import INDEX_FILE, VCS_DIR
from chronovcs.errors import CorruptionError, ValidationError
from chronovcs.security.hasher import Hasher
from chronovcs.vcs.fileio import atomic_write_text
from chronovcs.vcs.locking import repo_lock

logger = logging.getLogger(__name__)


class IndexEntry(NamedTuple):
    path: str
    digest: str


def normalize_path(path: str | Path) -> str:
    """Return *path* as a relative forward-slash string."""
    text = str(path).replace("\\", "/")
    while text.startswith("./"):
        text = text[2:]
    text = text.strip("/")
    if not text or ".." in text.split("/"):
        raise ValidationError(f"Invalid tracked path: {path!r}")
    return text


class IndexEngine:
    """In-memory view of the staging index with explicit load/save."""

    def __init__(self, files: Mapping[str, str] | None = None) -> None:
        self._files: dict[str, str] = {}
        if files:
            self.replace(files)

    @staticmethod
    def index_path(repo_root: str | Path) -> Path:
        return Path(repo_root) / VCS_DIR / INDEX_FILE

    # -- Persistence ----------------------------------------------------------

    @classmethod
    def load(cls, repo_root: str | Path) -> IndexEngine:
        """Read the index of *repo_root*; a missing file is an empty index."""
        path = cls.index_path(repo_root)
        if not path.is_file():
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            files = data.get("files", {})
            if not isinstance(files, dict):
                raise TypeError("'files' is not an object")
            return cls(files)
        except (json.JSONDecodeError, UnicodeDecodeError, AttributeError, TypeError, ValidationError) as exc:
            raise CorruptionError(f"Unreadable index: {exc}", path=str(path)) from exc

    def save(self, repo_root: str | Path) -> None:
        """Atomically persist the index under *repo_root*."""
        payload = json.dumps({"files": dict(sorted(self._files.items()))}, indent=2)
        with repo_lock(repo_root):
            atomic_write_text(self.index_path(repo_root), payload)
        logger.debug("Saved index with %d entries", len(self._files))

    # -- Mutation -------------------------------------------------------------

    def update(self, path: str | Path, digest: str) -> None:
        if not Hasher.is_digest(digest):
            raise ValidationError(f"Invalid object id: {digest!r}")
        self._files[normalize_path(path)] = digest

    def remove(self, path: str | Path) -> bool:
        """Drop *path* from the index.  Returns False if it was not tracked."""
        return self._files.pop(normalize_path(path), None) is not None

    def replace(self, files: Mapping[str, str]) -> None:
        """Swap the whole content for *files* (used when checking out a commit)."""
        staged: dict[str, str] = {}
        for path, digest in files.items():
            if not Hasher.is_digest(digest):
                raise ValidationError(f"Invalid object id for {path!r}: {digest!r}")
            staged[normalize_path(path)] = digest
        self._files = staged

    def clear(self) -> None:
        self._files = {}

    # -- Queries --------------------------------------------------------------

    def entries(self) -> Mapping[str, str]:
        """Read-only view of ``path -> digest``."""
        return MappingProxyType(self._files)

    def snapshot(self) -> dict[str, str]:
        """Sorted copy of the entries, suitable for a commit manifest."""
        return dict(sorted(self._files.items()))

    def get(self, path: str | Path) -> str | None:
        return self._files.get(normalize_path(path))

    def __iter__(self) -> Iterator[IndexEntry]:
        for path, digest in sorted(self._files.items()):
            yield IndexEntry(path, digest)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, (str, Path)) and str(path).replace("\\", "/") in self._files

    def __len__(self) -> int:
        return len(self._files)
