"""Branching — create, switch, rename, delete, and list branches.

Branches are plain ref files; creating one never copies data.  Switching
branches (or detaching HEAD at a commit) rewrites the working tree and
index to the target manifest and refuses to run over local changes.
A hard reset is the one move that discards them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chronovcs.errors import BranchExistsError, RefNotFoundError, ValidationError
from chronovcs.security.hasher import Hasher
from chronovcs.vcs.checkout import ensure_clean, materialize
from chronovcs.vcs.locking import repo_lock
from chronovcs.vcs.refs import remote_branch_name, validate_branch_name
from chronovcs.vcs.repo import RepoManager

logger = logging.getLogger(__name__)


@dataclass
class BranchInfo:
    name: str
    head: str | None
    is_current: bool = False


def create_branch(
    repo: RepoManager,
    name: str,
    base: str | None = None,
) -> str:
    """Create a branch pointing at *base* without switching to it.

    Parameters
    ----------
    repo:
        The repository manager.
    name:
        New branch name.
    base:
        Branch name or commit id to start from.  Defaults to HEAD.

    Returns the name of the created branch.
    """
    name = validate_branch_name(name)
    with repo_lock(repo.path):
        if repo.refs.has_ref(name):
            raise BranchExistsError(name)
        start = _resolve(repo, base) if base is not None else repo.head_commit_id()
        if start is None:
            raise ValidationError("Cannot create a branch before the first commit.")
        repo.refs.write_ref(name, start)
    logger.info("Created branch '%s' at %s", name, start[:7])
    return name


def delete_branch(repo: RepoManager, name: str) -> None:
    """Delete branch *name*; the checked-out branch cannot be deleted."""
    name = validate_branch_name(name)
    with repo_lock(repo.path):
        if not repo.refs.has_ref(name):
            raise RefNotFoundError(name)
        if repo.current_branch() == name:
            raise ValidationError(f"Cannot delete the checked-out branch '{name}'.")
        repo.refs.delete_ref(name)
    logger.info("Deleted branch '%s'", name)


def rename_branch(repo: RepoManager, old: str, new: str) -> str:
    """Rename *old* to *new*, moving HEAD along if *old* is checked out."""
    old = validate_branch_name(old)
    new = validate_branch_name(new)
    with repo_lock(repo.path):
        if not repo.refs.has_ref(old):
            raise RefNotFoundError(old)
        if repo.refs.has_ref(new):
            raise BranchExistsError(new)
        head = repo.refs.read_ref(old)
        repo.refs.write_ref(new, head)
        if repo.current_branch() == old:
            repo.refs.set_head_branch(new)
        repo.refs.delete_ref(old)
    logger.info("Renamed branch '%s' to '%s'", old, new)
    return new


def list_branches(repo: RepoManager) -> list[BranchInfo]:
    """Return all branches, the checked-out one first."""
    current = repo.current_branch()
    infos = [
        BranchInfo(name, head, name == current)
        for name, head in repo.refs.list_refs().items()
    ]
    return sorted(infos, key=lambda b: (not b.is_current, b.name))


def switch_branch(repo: RepoManager, name: str) -> str:
    """Check out branch *name*.

    Returns the branch name.
    """
    name = validate_branch_name(name)
    with repo_lock(repo.path):
        if not repo.refs.has_ref(name):
            raise RefNotFoundError(name)
        ensure_clean(repo)
        _checkout(repo, repo.refs.read_ref(name))
        repo.refs.set_head_branch(name)
    logger.info("Switched to branch '%s'", name)
    return name


def checkout_commit(repo: RepoManager, commit_id: str) -> str:
    """Detach HEAD at *commit_id* and check its files out."""
    with repo_lock(repo.path):
        target = _resolve(repo, commit_id)
        ensure_clean(repo)
        _checkout(repo, target)
        repo.refs.set_head_detached(target)
    logger.info("HEAD is now detached at %s", target[:7])
    return target


def reset_hard(repo: RepoManager, target: str) -> str:
    """Move HEAD (its branch, or the detached pointer) to *target*, discarding local changes.

    *target* is a commit id, a branch name, or ``origin/<branch>``.  Tracked
    and staged files are made to match the target commit; untracked files
    are left alone.  Returns the commit id now checked out.
    """
    with repo_lock(repo.path):
        commit_id = _resolve(repo, target)
        current = repo.head_commit()
        previous = dict(current.files) if current else {}
        previous.update(repo.load_index().entries())
        materialize(repo, repo.commits.load(commit_id).files, previous)
        repo.refs.advance_head(commit_id)
    logger.info("HEAD reset to %s (%s)", commit_id[:7], target)
    return commit_id


def _checkout(repo: RepoManager, commit_id: str | None) -> None:
    current = repo.head_commit()
    previous = dict(current.files) if current else {}
    target = dict(repo.commits.load(commit_id).files) if commit_id else {}
    materialize(repo, target, previous)


def _resolve(repo: RepoManager, ref: str) -> str:
    """Resolve a full commit id, branch name, or ``origin/<branch>`` to a commit id."""
    if Hasher.is_digest(ref):
        repo.commits.load(ref)
        return ref
    remote = remote_branch_name(ref)
    if remote is not None:
        head = repo.refs.read_remote_ref(remote)
        if head is None:
            raise RefNotFoundError(ref)
        repo.commits.load(head)
        return head
    head = repo.refs.read_ref(validate_branch_name(ref))
    if head is None:
        raise ValidationError(f"Branch '{ref}' has no commits yet.")
    return head
