"""SyncManager — clone, fetch, pull, push, and reset between a local repository and a remote.

Each workflow opens its own :class:`SyncSession`, handshakes, and then
issues the protocol calls in order.  Nothing is retried: a conflict or
refusal from the server is raised to the caller unchanged.
"""

from __future__ import annotations

import base64
import binascii
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from chronovcs.config import DEFAULT_BATCH_SIZE, DEFAULT_HISTORY_LIMIT, DEFAULT_REMOTE, ConfigManager
from chronovcs.errors import (
    BlobNotFoundError,
    ConflictError,
    CorruptionError,
    PushConflictError,
    RepositoryExistsError,
    ValidationError,
)
from chronovcs.sync.conflict import PullAnalysis, PullStrategy, analyze_pull
from chronovcs.sync.models import PushRequest
from chronovcs.sync.remote import RemoteConfig
from chronovcs.sync.session import SyncSession
from chronovcs.sync.transport import HttpTransport, SyncTransport
from chronovcs.vcs.branching import reset_hard
from chronovcs.vcs.checkout import ensure_clean, materialize
from chronovcs.vcs.commits import Commit
from chronovcs.vcs.locking import repo_lock
from chronovcs.vcs.repo import RepoManager

logger = logging.getLogger(__name__)


@dataclass
class CloneResult:
    path: Path
    default_branch: str
    branches: dict[str, str] = field(default_factory=dict)
    commit_count: int = 0
    object_count: int = 0


@dataclass
class PullResult:
    branch: str
    analysis: PullAnalysis
    files_updated: int = 0

    @property
    def strategy(self) -> PullStrategy:
        return self.analysis.strategy


@dataclass
class FetchResult:
    updated: dict[str, str] = field(default_factory=dict)
    pruned: list[str] = field(default_factory=list)
    commit_count: int = 0
    object_count: int = 0

    @property
    def up_to_date(self) -> bool:
        return not self.updated and not self.pruned


@dataclass
class PushSummary:
    branch: str
    pushed: list[str] = field(default_factory=list)
    new_head: Optional[str] = None

    @property
    def up_to_date(self) -> bool:
        return not self.pushed


def fetch_history(
    session: SyncSession,
    branch: str,
    since_commit: str | None = None,
    page_size: int = DEFAULT_HISTORY_LIMIT,
) -> list[Commit]:
    """Page through the remote history of *branch*, newest first."""
    commits: list[Commit] = []
    from_commit: str | None = None
    while True:
        page = session.get_commit_history(
            branch, since_commit=since_commit, limit=page_size, from_commit=from_commit,
        )
        commits.extend(page.commits)
        if not page.has_more or not page.commits:
            return commits
        from_commit = page.commits[-1].parent
        if from_commit is None:
            return commits


def fetch_objects(
    session: SyncSession,
    repo: RepoManager,
    digests: Iterable[str],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> int:
    """Download every digest the local store lacks, each exactly once.

    Returns the number of objects written.
    """
    wanted = [d for d in dict.fromkeys(digests) if not repo.objects.exists(d)]
    written = 0
    for start in range(0, len(wanted), batch_size):
        batch = wanted[start:start + batch_size]
        response = session.get_batch_objects(batch)
        for digest in batch:
            encoded = response.objects.get(digest)
            if encoded is None:
                raise BlobNotFoundError(digest)
            try:
                data = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise CorruptionError("Remote sent undecodable object", digest=digest) from exc
            repo.objects.write_bytes(data, expected_digest=digest)
            written += 1
        logger.debug("Fetched %d/%d objects", min(start + batch_size, len(wanted)), len(wanted))
    return written


class SyncManager:
    """Synchronise one local repository with its remote.

    Parameters
    ----------
    repo:
        The local repository.
    transport:
        Connection to the remote repository.
    batch_size:
        Objects requested per batch call.
    history_limit:
        Commits requested per history page.
    """

    def __init__(
        self,
        repo: RepoManager,
        transport: SyncTransport,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if batch_size <= 0 or history_limit <= 0:
            raise ValidationError("Batch size and history limit must be positive.")
        self.repo = repo
        self.transport = transport
        self.batch_size = batch_size
        self.history_limit = history_limit

    @classmethod
    def from_remote_config(
        cls, repo: RepoManager, email: str, token: str | None = None, **kwargs,
    ) -> SyncManager:
        """Build a manager talking HTTP to the remote recorded in ``.vcs/remote.json``.

        ``CHRONO_REMOTE_URL`` overrides the recorded base URL, ``CHRONO_TOKEN``
        supplies the token when none is passed, and the batch and page sizes
        default to ``CHRONO_BATCH_SIZE`` / ``CHRONO_HISTORY_LIMIT``.
        """
        manager = ConfigManager()
        config = manager.load_config(repo.path)
        remote = RemoteConfig.load(repo.path)
        token = token or config["CHRONO_TOKEN"]
        if not token:
            raise ValidationError("No access token given and CHRONO_TOKEN is not set.")
        kwargs.setdefault("batch_size", manager.get_int(config, "CHRONO_BATCH_SIZE"))
        kwargs.setdefault("history_limit", manager.get_int(config, "CHRONO_HISTORY_LIMIT"))
        base_url = config["CHRONO_REMOTE_URL"] or remote.base_url
        return cls(repo, HttpTransport(base_url, remote.repo_key, email, token), **kwargs)

    def _open(self) -> SyncSession:
        session = SyncSession(self.transport)
        session.handshake()
        return session

    def _branch(self) -> str:
        branch = self.repo.current_branch()
        if branch is None:
            raise ValidationError("HEAD is detached; check out a branch first.")
        return branch

    # -- Clone ----------------------------------------------------------------

    @classmethod
    def clone(
        cls,
        transport: SyncTransport,
        target_dir: str | Path,
        *,
        base_url: str | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> CloneResult:
        """Create a new local repository at *target_dir* from the remote.

        On failure the partially written ``.vcs`` directory is removed.
        """
        repo = RepoManager(target_dir)
        if repo.vcs_dir.exists():
            raise RepositoryExistsError(f"A ChronoVCS repository already exists in {repo.path}")

        with SyncSession(transport) as session:
            handshake = session.handshake()
            refs = session.get_refs()
            default_branch = refs.default_branch or handshake.repository.default_branch

            commits: dict[str, Commit] = {}
            for branch in refs.branches:
                for commit in fetch_history(session, branch, page_size=history_limit):
                    commits.setdefault(commit.id, commit)
            digests = [d for c in commits.values() for d in c.files.values()]

            repo.init_repo(
                default_branch=default_branch,
                versioning_mode=handshake.repository.versioning_mode.value,
            )
            try:
                objects = fetch_objects(session, repo, digests, batch_size)
                with repo_lock(repo.path):
                    for commit in commits.values():
                        repo.commits.save(commit)
                    for branch, head in refs.branches.items():
                        repo.refs.write_ref(branch, head)
                        repo.refs.write_remote_ref(branch, head)
                    url = base_url or getattr(transport, "base_url", None)
                    if url:
                        RemoteConfig(base_url=url, repo_key=transport.repo_key).save(repo.path)
                    head = refs.branches.get(default_branch)
                    if head:
                        materialize(repo, commits[head].files)
            except BaseException:
                logger.warning("Clone into %s failed; removing partial repository", repo.path)
                shutil.rmtree(repo.vcs_dir, ignore_errors=True)
                raise

        logger.info(
            "Cloned %s into %s (%d commits, %d objects)",
            transport.repo_key, repo.path, len(commits), objects,
        )
        return CloneResult(
            path=repo.path,
            default_branch=default_branch,
            branches=dict(refs.branches),
            commit_count=len(commits),
            object_count=objects,
        )

    # -- Fetch ----------------------------------------------------------------

    def fetch(self) -> FetchResult:
        """Download remote heads and the commits and objects they need.

        The heads land in ``refs/remotes/origin``; local branches, the
        index, and the working tree are left as they are.  Remote-tracking
        refs of branches the remote no longer has are removed.
        """
        with self._open() as session:
            remote_heads = session.get_refs().branches
            known = self.repo.refs.list_remote_refs()

            incoming: dict[str, Commit] = {}
            for branch, head in remote_heads.items():
                if self.repo.commits.exists(head):
                    continue
                since = known.get(branch) or self.repo.refs.read_ref(branch, missing_ok=True)
                for commit in fetch_history(session, branch, since_commit=since,
                                            page_size=self.history_limit):
                    if not self.repo.commits.exists(commit.id):
                        incoming.setdefault(commit.id, commit)

            digests = [d for c in incoming.values() for d in c.files.values()]
            objects = fetch_objects(session, self.repo, digests, self.batch_size)

            with repo_lock(self.repo.path):
                for commit in incoming.values():
                    self.repo.commits.save(commit)
                updated = {}
                for branch, head in remote_heads.items():
                    if known.get(branch) != head:
                        self.repo.refs.write_remote_ref(branch, head)
                        updated[branch] = head
                pruned = [b for b in known if b not in remote_heads]
                for branch in pruned:
                    self.repo.refs.delete_remote_ref(branch)

        logger.info(
            "Fetched %s: %d branch(es) updated, %d commit(s), %d object(s)",
            self.transport.repo_key, len(updated), len(incoming), objects,
        )
        return FetchResult(updated, pruned, len(incoming), objects)

    # -- Pull -----------------------------------------------------------------

    def analyze(self, session: SyncSession | None = None) -> PullAnalysis:
        """Compare the current branch with the remote without changing anything."""
        session = session or self._open()
        branch = self._branch()
        remote_head = session.get_refs().branches.get(branch)
        local_head = self.repo.refs.read_ref(branch, missing_ok=True)
        ancestry = {c.id for c in self.repo.history(local_head)} if local_head else set()

        incoming: list[Commit] = []
        if remote_head and remote_head != local_head and remote_head not in ancestry:
            incoming = fetch_history(session, branch, since_commit=local_head,
                                     page_size=self.history_limit)
        return analyze_pull(local_head, remote_head, incoming, ancestry)

    def pull(self) -> PullResult:
        """Fast-forward the current branch to the remote head.

        Raises :class:`ConflictError` when the branches have diverged or
        local changes would be overwritten.
        """
        with self._open() as session:
            branch = self._branch()
            analysis = self.analyze(session)
            if analysis.strategy is PullStrategy.DIVERGED:
                raise ConflictError(
                    f"Branch '{branch}' has diverged from the remote "
                    f"(local {analysis.local_head}, remote {analysis.remote_head}); "
                    "merge is not supported."
                )
            if analysis.strategy is not PullStrategy.FAST_FORWARD:
                logger.info("Pull %s: %s", branch, analysis.strategy.value)
                return PullResult(branch, analysis)

            ensure_clean(self.repo)
            digests = [d for c in analysis.incoming for d in c.files.values()]
            fetch_objects(session, self.repo, digests, self.batch_size)

            with repo_lock(self.repo.path):
                for commit in analysis.incoming:
                    self.repo.commits.save(commit)
                current = self.repo.head_commit()
                target = analysis.incoming[-1]
                updated = materialize(
                    self.repo, target.files, current.files if current else {},
                )
                self.repo.refs.write_ref(branch, target.id)
                self.repo.refs.write_remote_ref(branch, target.id)

        logger.info("Fast-forwarded %s to %s (%d commits)", branch, target.id[:7],
                    len(analysis.incoming))
        return PullResult(branch, analysis, updated)

    # -- Reset ----------------------------------------------------------------

    def reset_hard(self, target: str | None = None) -> str:
        """Fetch, then hard-reset the current branch to *target*.

        *target* defaults to ``origin/<current branch>``.  Local commits
        not reachable from the target stay in the object store but are no
        longer on the branch; uncommitted changes to tracked files are lost.
        Returns the new head commit id.
        """
        branch = self._branch()
        self.fetch()
        return reset_hard(self.repo, target or f"{DEFAULT_REMOTE}/{branch}")

    # -- Push -----------------------------------------------------------------

    def push(self) -> PushSummary:
        """Send the commits of the current branch the remote does not have."""
        with self._open() as session:
            branch = self._branch()
            local_head = self.repo.refs.read_ref(branch, missing_ok=True)
            if local_head is None:
                raise ValidationError(f"Branch '{branch}' has no commits to push.")
            remote_head = session.get_refs().branches.get(branch)
            if remote_head == local_head:
                return PushSummary(branch, [], local_head)

            chain = self.repo.history(local_head)
            ids = [c.id for c in chain]
            if remote_head is not None and remote_head not in ids:
                raise PushConflictError(branch, local_head, remote_head)
            outgoing = list(reversed(chain[:ids.index(remote_head)] if remote_head else chain))

            base = remote_head
            known = set(self.repo.commits.load(remote_head).files.values()) if remote_head else set()
            pushed: list[str] = []
            for commit in outgoing:
                new_digests = sorted(set(commit.files.values()) - known)
                blobs = {
                    d: base64.b64encode(self.repo.objects.read_blob(d)).decode("ascii")
                    for d in new_digests
                }
                result = session.push(PushRequest(
                    branch=branch, base_commit_id=base, new_commit=commit, blobs=blobs,
                ))
                pushed.append(result.new_head_commit_id)
                base = result.new_head_commit_id
                known |= set(commit.files.values())
            if pushed:
                self.repo.refs.write_remote_ref(branch, base)

        logger.info("Pushed %d commit(s) to %s/%s", len(pushed), self.transport.repo_key, branch)
        return PushSummary(branch, pushed, base)
