"""Commit objects, their content-derived ids, and on-disk storage.

A commit id is the SHA-256 of this canonical JSON document, encoded as
UTF-8::

    json.dumps(
        {"author": ..., "files": {...}, "message": ..., "parent": ..., "timestamp": ...},
        sort_keys=True, separators=(",", ":"), ensure_ascii=False,
    )

``parent`` is ``null`` for a root commit.  The branch name is stored with
the commit but is not part of its identity, so the same commit keeps its
id when pushed to another branch.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from chronovcs.config import COMMITS_DIR, VCS_DIR
from chronovcs.errors import CommitNotFoundError, CorruptionError, ValidationError
from chronovcs.security.hasher import Hasher
from chronovcs.vcs.fileio import atomic_write_text

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Commit(BaseModel):
    """Immutable snapshot of the index plus metadata."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = ""
    parent: Optional[str] = None
    author: str = ""
    branch: str = ""
    message: str = ""
    timestamp: str = Field(default_factory=_utc_now)
    files: dict[str, str] = Field(default_factory=dict)

    def canonical_payload(self) -> bytes:
        doc = {
            "author": self.author,
            "files": dict(self.files),
            "message": self.message,
            "parent": self.parent,
            "timestamp": self.timestamp,
        }
        return json.dumps(
            doc, sort_keys=True, separators=(",", ":"), ensure_ascii=False,
        ).encode("utf-8")

    def compute_id(self) -> str:
        return Hasher.hash_bytes(self.canonical_payload())

    def with_id(self) -> Commit:
        """Return a copy whose ``id`` is derived from its content."""
        return self.model_copy(update={"id": self.compute_id()})

    def verify(self) -> bool:
        return bool(self.id) and self.id == self.compute_id()

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def build_commit(
    files: dict[str, str],
    message: str,
    author: str,
    branch: str,
    parent: str | None = None,
    timestamp: str | None = None,
) -> Commit:
    """Validate inputs and return a commit with its content id filled in."""
    if not message or not message.strip():
        raise ValidationError("Commit message must not be empty.")
    if not files:
        raise ValidationError("Nothing to commit: the index is empty.")
    if parent is not None and not Hasher.is_digest(parent):
        raise ValidationError(f"Invalid parent commit id: {parent!r}")
    commit = Commit(
        parent=parent,
        author=author,
        branch=branch,
        message=message.strip(),
        timestamp=timestamp or _utc_now(),
        files=dict(sorted(files.items())),
    )
    return commit.with_id()


class CommitStore:
    """Commits stored as ``.vcs/commits/<id>.json``."""

    def __init__(self, root: str | Path) -> None:
        self.commits_dir = Path(root) / VCS_DIR / COMMITS_DIR

    def path_for(self, commit_id: str) -> Path:
        if not Hasher.is_digest(commit_id):
            raise ValidationError(f"Invalid commit id: {commit_id!r}")
        return self.commits_dir / f"{commit_id}.json"

    def exists(self, commit_id: str) -> bool:
        try:
            return self.path_for(commit_id).is_file()
        except ValidationError:
            return False

    def save(self, commit: Commit) -> Path:
        """Write *commit*; an existing file for the same id is left alone."""
        if not commit.verify():
            raise ValidationError(f"Commit id does not match its content: {commit.id!r}")
        path = self.path_for(commit.id)
        if not path.exists():
            atomic_write_text(path, commit.model_dump_json(indent=2))
            logger.debug("Stored commit %s", commit.id)
        return path

    def load(self, commit_id: str) -> Commit:
        path = self.path_for(commit_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise CommitNotFoundError(commit_id) from None
        try:
            commit = Commit.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise CorruptionError("Unreadable commit", path=str(path), digest=commit_id) from exc
        if commit.id != commit_id:
            raise CorruptionError(
                f"Commit file holds id {commit.id}", path=str(path), digest=commit_id,
            )
        if not commit.verify():
            raise CorruptionError(
                "Commit content does not match its id", path=str(path), digest=commit_id,
            )
        return commit

    def iter_ids(self) -> list[str]:
        if not self.commits_dir.is_dir():
            return []
        return sorted(
            p.stem for p in self.commits_dir.glob("*.json") if Hasher.is_digest(p.stem)
        )
