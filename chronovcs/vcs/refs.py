"""RefStore — branch heads and the HEAD pointer.

``.vcs/HEAD`` holds either ``ref: refs/heads/<branch>`` (attached) or a
raw commit id (detached).  Each branch is a file under
``.vcs/refs/heads`` containing its head commit id; an empty file is a
branch with no commits yet.  Remote-tracking refs live under
``.vcs/refs/remotes/origin`` and record the remote heads seen by the last
fetch, clone, pull, or push.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from chronovcs.config import DEFAULT_REMOTE, HEAD_FILE, REFS_HEADS_DIR, REFS_REMOTES_DIR, VCS_DIR
from chronovcs.errors import CorruptionError, RefNotFoundError, ValidationError
from chronovcs.security.hasher import Hasher
from chronovcs.vcs.fileio import atomic_write_text
from chronovcs.vcs.locking import repo_lock

logger = logging.getLogger(__name__)

_REF_PREFIX = "ref: "
_INVALID_BRANCH_RE = re.compile(r"[\s/\\~^:?*\[]")


def validate_branch_name(name: str | None) -> str:
    """Return *name* stripped, or raise :class:`ValidationError`."""
    candidate = (name or "").strip()
    if not candidate:
        raise ValidationError("Branch name must not be empty.")
    if _INVALID_BRANCH_RE.search(candidate) or ".." in candidate or candidate.startswith("."):
        raise ValidationError(f"Invalid branch name: {candidate!r}")
    return candidate


def remote_branch_name(name: str) -> str | None:
    """Return the branch of an ``origin/<branch>`` name, or None for other names."""
    prefix = f"{DEFAULT_REMOTE}/"
    if name.startswith(prefix):
        return validate_branch_name(name[len(prefix):])
    return None


class RefStore:
    """Read and write refs of the repository rooted at *root*."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.vcs_dir = self.root / VCS_DIR
        self.heads_dir = self.vcs_dir / REFS_HEADS_DIR
        self.remotes_dir = self.vcs_dir / REFS_REMOTES_DIR / DEFAULT_REMOTE
        self.head_file = self.vcs_dir / HEAD_FILE

    # -- HEAD -----------------------------------------------------------------

    def read_head(self) -> str:
        """Return the raw HEAD content, stripped."""
        try:
            return self.head_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            raise CorruptionError("HEAD is missing", path=str(self.head_file)) from None

    def current_branch(self) -> str | None:
        """Return the attached branch name, or None when HEAD is detached."""
        head = self.read_head()
        if head.startswith(_REF_PREFIX):
            return head[len(_REF_PREFIX):].strip().removeprefix("refs/heads/")
        return None

    def is_detached(self) -> bool:
        return self.current_branch() is None

    def head_commit_id(self) -> str | None:
        """Resolve HEAD to a commit id; None for an unborn branch."""
        branch = self.current_branch()
        if branch is not None:
            return self.read_ref(branch, missing_ok=True)
        head = self.read_head()
        if not Hasher.is_digest(head):
            raise CorruptionError(f"HEAD holds an invalid value: {head!r}", path=str(self.head_file))
        return head

    def set_head_branch(self, branch: str) -> None:
        branch = validate_branch_name(branch)
        with repo_lock(self.root):
            atomic_write_text(self.head_file, f"{_REF_PREFIX}refs/heads/{branch}\n")
        logger.debug("HEAD -> refs/heads/%s", branch)

    def set_head_detached(self, commit_id: str) -> None:
        if not Hasher.is_digest(commit_id):
            raise ValidationError(f"Invalid commit id: {commit_id!r}")
        with repo_lock(self.root):
            atomic_write_text(self.head_file, commit_id + "\n")
        logger.debug("HEAD detached at %s", commit_id)

    def advance_head(self, commit_id: str) -> None:
        """Move whatever HEAD points at (branch or detached) to *commit_id*."""
        with repo_lock(self.root):
            branch = self.current_branch()
            if branch is None:
                self.set_head_detached(commit_id)
            else:
                self.write_ref(branch, commit_id)

    # -- Branch refs ----------------------------------------------------------

    def ref_path(self, branch: str) -> Path:
        return self.heads_dir / validate_branch_name(branch)

    def has_ref(self, branch: str) -> bool:
        return self.ref_path(branch).is_file()

    def read_ref(self, branch: str, missing_ok: bool = False) -> str | None:
        """Return the head commit of *branch*, None when it has no commits.

        A branch without a ref file raises :class:`RefNotFoundError` unless
        *missing_ok* is set.
        """
        path = self.ref_path(branch)
        try:
            value = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            if missing_ok:
                return None
            raise RefNotFoundError(branch) from None
        if not value:
            return None
        if not Hasher.is_digest(value):
            raise CorruptionError(f"Ref holds an invalid commit id: {value!r}", path=str(path))
        return value

    def write_ref(self, branch: str, commit_id: str | None) -> None:
        """Point *branch* at *commit_id*; None writes an empty (unborn) ref."""
        if commit_id is not None and not Hasher.is_digest(commit_id):
            raise ValidationError(f"Invalid commit id: {commit_id!r}")
        path = self.ref_path(branch)
        with repo_lock(self.root):
            atomic_write_text(path, (commit_id or "") + ("\n" if commit_id else ""))
        logger.debug("refs/heads/%s -> %s", branch, commit_id)

    def delete_ref(self, branch: str) -> None:
        path = self.ref_path(branch)
        with repo_lock(self.root):
            try:
                path.unlink()
            except FileNotFoundError:
                raise RefNotFoundError(branch) from None

    def list_refs(self) -> dict[str, str | None]:
        """Return ``branch -> head commit id`` for every branch, sorted by name."""
        if not self.heads_dir.is_dir():
            return {}
        refs: dict[str, str | None] = {}
        for path in sorted(self.heads_dir.iterdir()):
            if path.is_file() and not path.name.startswith("."):
                refs[path.name] = self.read_ref(path.name, missing_ok=True)
        return refs

    # -- Remote-tracking refs -------------------------------------------------

    def remote_ref_path(self, branch: str) -> Path:
        return self.remotes_dir / validate_branch_name(branch)

    def read_remote_ref(self, branch: str) -> str | None:
        """Return the last known remote head of *branch*, None if never seen."""
        path = self.remote_ref_path(branch)
        try:
            value = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if not Hasher.is_digest(value):
            raise CorruptionError(f"Remote ref holds an invalid commit id: {value!r}", path=str(path))
        return value

    def write_remote_ref(self, branch: str, commit_id: str) -> None:
        if not Hasher.is_digest(commit_id):
            raise ValidationError(f"Invalid commit id: {commit_id!r}")
        path = self.remote_ref_path(branch)
        with repo_lock(self.root):
            atomic_write_text(path, commit_id + "\n")
        logger.debug("refs/remotes/%s/%s -> %s", DEFAULT_REMOTE, branch, commit_id)

    def delete_remote_ref(self, branch: str) -> bool:
        path = self.remote_ref_path(branch)
        with repo_lock(self.root):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        return True

    def list_remote_refs(self) -> dict[str, str]:
        """Return ``branch -> remote head`` for every remote-tracking ref."""
        if not self.remotes_dir.is_dir():
            return {}
        refs: dict[str, str] = {}
        for path in sorted(self.remotes_dir.iterdir()):
            if path.is_file() and not path.name.startswith("."):
                head = self.read_remote_ref(path.name)
                if head is not None:
                    refs[path.name] = head
        return refs
