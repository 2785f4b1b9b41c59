"""SyncServer — server side of the sync protocol.

Every call names the caller (``identity`` plus ``credential``) and the
repository, re-resolves the caller's effective permissions, and checks
the capability the call needs before touching the store.
"""

from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path
from typing import Callable, Iterable

from chronovcs.config import DEFAULT_BRANCH, DEFAULT_HISTORY_LIMIT, ConfigManager
from chronovcs.errors import (
    CommitNotFoundError,
    ConflictError,
    CorruptionError,
    NotFoundError,
    PermissionDeniedError,
    PushConflictError,
    RefNotFoundError,
    RepositoryNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from chronovcs.release.classifier import build_breakdown, pick_version_type
from chronovcs.release.manager import resolve_version
from chronovcs.release.models import (
    CreateReleaseRequest,
    RecommendVersionResponse,
    ReleaseResponse,
)
from chronovcs.release.semver import SemanticVersion, VersionType
from chronovcs.security.audit import AuditLogger
from chronovcs.security.hasher import Hasher
from chronovcs.sync.models import (
    CAPABILITIES,
    BatchObjectsResponse,
    BranchResponse,
    CommitHistoryResponse,
    Credential,
    HandshakeRepository,
    HandshakeResponse,
    HandshakeUser,
    Identity,
    PermissionSet,
    PushRequest,
    PushResult,
    RefsResponse,
    RepoPermission,
    RepositoryInfo,
    TokenPermission,
    VersioningMode,
)
from chronovcs.sync.permissions import EffectivePermission, PermissionResolver, require
from chronovcs.sync.store import ServerStore
from chronovcs.vcs.commits import Commit
from chronovcs.vcs.history import iter_history
from chronovcs.vcs.refs import validate_branch_name

logger = logging.getLogger(__name__)

PushStrategy = Callable[[RepositoryInfo, Identity, PushRequest, dict[str, bytes]], PushResult]


class SyncServer:
    """Authoritative repository host.

    Parameters
    ----------
    store:
        Backing :class:`ServerStore`.  An in-memory store is created when
        omitted.
    audit:
        Optional :class:`AuditLogger` receiving accepted mutations.
    """

    def __init__(
        self,
        store: ServerStore | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.store = store or ServerStore()
        self.audit = audit
        self.resolver = PermissionResolver(self.store)
        self._push_strategies: dict[VersioningMode, PushStrategy] = {
            VersioningMode.PROJECT: self._push_project,
            VersioningMode.OBJECT: self._push_object,
        }

    @classmethod
    def from_config(cls, project_path: str | Path) -> SyncServer:
        """Open the store and audit databases named by ``CHRONO_SERVER_DB`` / ``CHRONO_AUDIT_DB``.

        Relative paths resolve against *project_path*.
        """
        root = Path(project_path)
        config = ConfigManager().load_config(root)

        def _db(key: str) -> str:
            value = config[key]
            if value == ":memory:" or Path(value).is_absolute():
                return value
            return str(root / value)

        return cls(ServerStore(_db("CHRONO_SERVER_DB")), AuditLogger(_db("CHRONO_AUDIT_DB")))

    # ------------------------------------------------------------------
    # Repository lifecycle
    # ------------------------------------------------------------------

    def create_repository(
        self,
        owner: Identity,
        repo_key: str,
        name: str | None = None,
        *,
        description: str = "",
        default_branch: str = DEFAULT_BRANCH,
        versioning_mode: VersioningMode | str = VersioningMode.PROJECT,
        private_repo: bool = True,
        release_enabled: bool = False,
    ) -> RepositoryInfo:
        """Register a new, empty repository owned by *owner*."""
        key = (repo_key or "").strip()
        if not key:
            raise ValidationError("Repository key must not be empty.")
        info = RepositoryInfo(
            repo_key=key,
            name=name or key,
            description=description,
            owner_id=owner.user_id,
            private_repo=private_repo,
            versioning_mode=VersioningMode(versioning_mode),
            default_branch=validate_branch_name(default_branch),
            release_enabled=release_enabled,
        )
        self.store.create_repository(info)
        logger.info("Created repository %s for %s", key, owner.user_id)
        return info

    def _effective(self, identity: Identity, credential: Credential, repo_key: str) -> EffectivePermission:
        return self.resolver.resolve(repo_key, identity, credential)

    def _authorize(
        self, identity: Identity, credential: Credential, repo_key: str, capability: str,
    ) -> tuple[RepositoryInfo, EffectivePermission]:
        effective = self._effective(identity, credential, repo_key)
        require(effective, capability, repo_key)
        repo = self.store.get_repository(repo_key)
        if repo is None:
            raise RepositoryNotFoundError(repo_key)
        return repo, effective

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def handshake(self, identity: Identity, credential: Credential, repo_key: str) -> HandshakeResponse:
        """Exchange the caller's identity for its permission grant."""
        effective = self._effective(identity, credential, repo_key)
        user = HandshakeUser(id=identity.user_id, user_uid=identity.user_uid, email=identity.email)
        if not effective.granted:
            logger.info("Handshake refused for %s on %s", identity.user_id, repo_key)
            return HandshakeResponse(success=False, user=user, permissions=PermissionSet.deny_all())

        repo = self.store.get_repository(repo_key)
        return HandshakeResponse(
            success=True,
            user=user,
            repository=HandshakeRepository(
                repo_key=repo.repo_key,
                name=repo.name,
                description=repo.description,
                private_repo=repo.private_repo,
                versioning_mode=repo.versioning_mode,
                default_branch=repo.default_branch,
            ),
            permissions=effective.permissions,
        )

    # ------------------------------------------------------------------
    # Clone / pull
    # ------------------------------------------------------------------

    def get_refs(self, identity: Identity, credential: Credential, repo_key: str) -> RefsResponse:
        repo, _ = self._authorize(identity, credential, repo_key, "can_read")
        heads = {b: h for b, h in self.store.branch_heads(repo_key).items() if h}
        return RefsResponse(default_branch=repo.default_branch, branches=heads)

    def get_commit(
        self, identity: Identity, credential: Credential, repo_key: str, commit_id: str,
    ) -> Commit:
        self._authorize(identity, credential, repo_key, "can_read")
        commit = self.store.get_commit(repo_key, commit_id)
        if commit is None:
            raise CommitNotFoundError(commit_id)
        return commit

    def get_commit_history(
        self,
        identity: Identity,
        credential: Credential,
        repo_key: str,
        branch: str,
        since_commit: str | None = None,
        limit: int | None = DEFAULT_HISTORY_LIMIT,
        from_commit: str | None = None,
    ) -> CommitHistoryResponse:
        """Commits of *branch*, newest first.

        Starts at the branch head (or *from_commit*) and stops before
        *since_commit*, at the root, or after *limit* commits.
        ``has_more`` is set when the limit cut the walk short.
        """
        self._authorize(identity, credential, repo_key, "can_pull")
        start = from_commit or self.store.branch_head(repo_key, validate_branch_name(branch))
        if start is None:
            if not self.store.has_branch(repo_key, branch):
                raise RefNotFoundError(branch)
            return CommitHistoryResponse(commits=[], has_more=False)
        page = limit if limit and limit > 0 else DEFAULT_HISTORY_LIMIT

        def load(commit_id: str) -> Commit:
            commit = self.store.get_commit(repo_key, commit_id)
            if commit is None:
                raise CommitNotFoundError(commit_id)
            return commit

        commits = list(iter_history(load, start, limit=page + 1, stop_at=since_commit))
        has_more = len(commits) > page
        return CommitHistoryResponse(commits=commits[:page], has_more=has_more)

    def get_batch_objects(
        self,
        identity: Identity,
        credential: Credential,
        repo_key: str,
        hashes: Iterable[str],
    ) -> BatchObjectsResponse:
        self._authorize(identity, credential, repo_key, "can_pull")
        found = self.store.get_blobs(repo_key, hashes)
        return BatchObjectsResponse(
            objects={h: base64.b64encode(data).decode("ascii") for h, data in found.items()}
        )

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(
        self,
        identity: Identity,
        credential: Credential,
        repo_key: str,
        request: PushRequest,
    ) -> PushResult:
        """Fast-forward *request.branch* to *request.new_commit*.

        All validation happens before the store is touched; the blob
        writes, commit append, and branch move then land atomically.
        Pushing a branch the server does not have also needs
        ``can_create_branch``.
        """
        repo, effective = self._authorize(identity, credential, repo_key, "can_push")
        current = self.store.branch_head(repo_key, validate_branch_name(request.branch))
        if (request.base_commit_id or None) != current:
            raise PushConflictError(request.branch, request.base_commit_id, current)
        if not self.store.has_branch(repo_key, request.branch):
            require(effective, "can_create_branch", repo_key)
        blobs = self._validate_push(repo_key, request)

        if (
            repo.release_enabled
            and request.branch == repo.default_branch
            and current is not None
            and not effective.allows("can_bypass_task_policy")
        ):
            raise PermissionDeniedError("can_bypass_task_policy", repo_key)

        strategy = self._push_strategies[repo.versioning_mode]
        result = strategy(repo, identity, request, blobs)
        if self.audit is not None:
            self.audit.log(
                identity.user_id, "push", repo_key, request.branch,
                before_id=request.base_commit_id, after_id=result.new_head_commit_id,
            )
        return result

    def _validate_push(self, repo_key: str, request: PushRequest) -> dict[str, bytes]:
        validate_branch_name(request.branch)
        commit = request.new_commit
        if not commit.id:
            raise ValidationError("Pushed commit has no id.")
        base = request.base_commit_id or None
        if commit.parent != base:
            raise ValidationError(
                f"Commit parent {commit.parent or '<none>'} does not match base "
                f"{base or '<none>'}."
            )
        if not commit.verify():
            raise ValidationError(f"Commit id {commit.id} does not match its content.")
        if not commit.files:
            raise ValidationError("Pushed commit has an empty manifest.")

        blobs: dict[str, bytes] = {}
        for digest, encoded in request.blobs.items():
            try:
                data = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError):
                raise ValidationError(f"Blob {digest} is not valid base64.") from None
            if Hasher.hash_bytes(data) != digest:
                raise ValidationError(f"Blob content does not hash to {digest}.")
            blobs[digest] = data

        needed = set(commit.files.values()) - set(blobs)
        missing = needed - self.store.existing_blobs(repo_key, needed)
        if missing:
            raise ValidationError(
                f"Push is missing {len(missing)} blob(s): {', '.join(sorted(missing)[:5])}"
            )
        return blobs

    def _push_project(
        self, repo: RepositoryInfo, identity: Identity, request: PushRequest, blobs: dict[str, bytes],
    ) -> PushResult:
        base = request.base_commit_id or None
        self.store.apply_push(repo.repo_key, request.branch, base, request.new_commit, blobs)
        logger.info(
            "Push accepted %s/%s: %s -> %s by %s", repo.repo_key, request.branch,
            base or "<none>", request.new_commit.id, identity.user_id,
        )
        return PushResult(
            branch=request.branch,
            new_head_commit_id=request.new_commit.id,
            fast_forward=True,
        )

    def _push_object(
        self, repo: RepositoryInfo, identity: Identity, request: PushRequest, blobs: dict[str, bytes],
    ) -> PushResult:
        raise ValidationError(
            f"Repository {repo.repo_key} uses OBJECT versioning, which does not accept pushes."
        )

    # ------------------------------------------------------------------
    # Branch administration
    # ------------------------------------------------------------------

    def _branch_response(self, repo: RepositoryInfo, branch: str, head: str | None) -> BranchResponse:
        return BranchResponse(
            branch_name=branch, head_commit_id=head, is_default=branch == repo.default_branch,
        )

    def list_branches(self, identity: Identity, credential: Credential, repo_key: str) -> list[BranchResponse]:
        repo, _ = self._authorize(identity, credential, repo_key, "can_read")
        return [
            self._branch_response(repo, branch, head)
            for branch, head in self.store.branch_heads(repo_key).items()
        ]

    def get_branch(
        self, identity: Identity, credential: Credential, repo_key: str, branch: str,
    ) -> BranchResponse:
        repo, _ = self._authorize(identity, credential, repo_key, "can_read")
        branch = validate_branch_name(branch)
        if not self.store.has_branch(repo_key, branch):
            raise RefNotFoundError(branch)
        return self._branch_response(repo, branch, self.store.branch_head(repo_key, branch))

    def create_branch(
        self,
        identity: Identity,
        credential: Credential,
        repo_key: str,
        branch: str,
        from_branch: str | None = None,
        from_commit: str | None = None,
    ) -> BranchResponse:
        """Create *branch* at *from_branch*'s head, at *from_commit*, or at the default branch head."""
        repo, _ = self._authorize(identity, credential, repo_key, "can_create_branch")
        branch = validate_branch_name(branch)
        if from_branch:
            if not self.store.has_branch(repo_key, from_branch):
                raise RefNotFoundError(from_branch)
            head = self.store.branch_head(repo_key, from_branch)
        elif from_commit:
            if self.store.get_commit(repo_key, from_commit) is None:
                raise CommitNotFoundError(from_commit)
            head = from_commit
        else:
            head = self.store.branch_head(repo_key, repo.default_branch)

        self.store.create_branch(repo_key, branch, head)
        if self.audit is not None:
            self.audit.log(identity.user_id, "branch.create", repo_key, branch, after_id=head)
        logger.info("Created branch %s/%s at %s", repo_key, branch, head or "<unborn>")
        return self._branch_response(repo, branch, head)

    def delete_branch(
        self, identity: Identity, credential: Credential, repo_key: str, branch: str,
    ) -> BranchResponse:
        """Remove *branch*; the default branch cannot be deleted."""
        repo, _ = self._authorize(identity, credential, repo_key, "can_delete_branch")
        if branch == repo.default_branch:
            raise ValidationError(f"Cannot delete the default branch '{branch}'.")
        head = self.store.branch_head(repo_key, branch)
        if not self.store.delete_branch(repo_key, branch):
            raise RefNotFoundError(branch)
        if self.audit is not None:
            self.audit.log(identity.user_id, "branch.delete", repo_key, branch, before_id=head)
        logger.info("Deleted branch %s/%s", repo_key, branch)
        return self._branch_response(repo, branch, head)

    # ------------------------------------------------------------------
    # Releases
    # ------------------------------------------------------------------

    def _release_messages(self, repo_key: str, branch: str) -> list[str]:
        releases = self.store.list_releases(repo_key)
        stop = releases[0].snapshot_commit_id if releases else None
        head = self.store.branch_head(repo_key, branch)

        def load(commit_id: str) -> Commit:
            commit = self.store.get_commit(repo_key, commit_id)
            if commit is None:
                raise CorruptionError("Missing commit in server history", digest=commit_id)
            return commit

        return [c.message for c in iter_history(load, head, stop_at=stop)]

    def recommend_version(
        self,
        identity: Identity,
        credential: Credential,
        repo_key: str,
        task_types: Iterable[VersionType | str] = (),
    ) -> RecommendVersionResponse:
        repo, _ = self._authorize(identity, credential, repo_key, "can_read")
        releases = self.store.list_releases(repo_key)
        current = releases[0].version if releases else "0.0.0"
        breakdown = build_breakdown(self._release_messages(repo_key, repo.default_branch), task_types)
        kind, reason = pick_version_type(breakdown)
        return RecommendVersionResponse(
            current_version=current,
            recommended_version=str(SemanticVersion.parse(current).bump(kind)),
            version_type=kind,
            reason=reason,
            breakdown=breakdown,
        )

    def create_release(
        self,
        identity: Identity,
        credential: Credential,
        repo_key: str,
        request: CreateReleaseRequest,
    ) -> ReleaseResponse:
        """Record a release of the default branch head; versions are unique per repository."""
        repo, _ = self._authorize(identity, credential, repo_key, "can_create_tag")
        releases = self.store.list_releases(repo_key)
        current = releases[0].version if releases else "0.0.0"
        if request.version and request.version.strip() and self.store.release_exists(repo_key, request.version.strip()):
            raise ConflictError(f"Release version already exists: {request.version.strip()}")

        version, kind = resolve_version(
            current, request.version, request.version_type, VersionType.MINOR,
        )
        if self.store.release_exists(repo_key, version):
            raise ConflictError(f"Release version already exists: {version}")

        release = self.store.insert_release(repo_key, ReleaseResponse(
            version=version,
            version_type=kind,
            message=request.message,
            snapshot_commit_id=self.store.branch_head(repo_key, repo.default_branch),
            created_by=identity.email or identity.user_id,
            tasks=request.tasks,
        ))
        if self.audit is not None:
            self.audit.log(identity.user_id, "release", repo_key, version,
                           before_id=current, after_id=version)
        logger.info("Release %s created for %s", version, repo_key)
        return release

    def list_releases(self, identity: Identity, credential: Credential, repo_key: str) -> list[ReleaseResponse]:
        self._authorize(identity, credential, repo_key, "can_read")
        return self.store.list_releases(repo_key)

    # ------------------------------------------------------------------
    # Permission administration
    # ------------------------------------------------------------------

    def list_permissions(self, identity: Identity, credential: Credential, repo_key: str) -> list[RepoPermission]:
        """Every explicit grant, with the owner's implicit grant first."""
        repo, _ = self._authorize(identity, credential, repo_key, "can_manage_repo")
        rows = [
            RepoPermission(repo_key=repo_key, user_id=repo.owner_id, owner=True,
                           permissions=PermissionSet.allow_all())
        ]
        for user_id, perms in self.store.list_user_permissions(repo_key):
            if user_id == repo.owner_id:
                rows[0] = RepoPermission(repo_key=repo_key, user_id=user_id, owner=True, permissions=perms)
            else:
                rows.append(RepoPermission(repo_key=repo_key, user_id=user_id, permissions=perms))
        return rows

    def get_permission(
        self, identity: Identity, credential: Credential, repo_key: str, user_id: str,
    ) -> RepoPermission:
        repo, _ = self._authorize(identity, credential, repo_key, "can_manage_repo")
        perms = self.store.get_user_permission(repo_key, user_id)
        is_owner = user_id == repo.owner_id
        if perms is None:
            perms = PermissionSet.allow_all() if is_owner else PermissionSet.deny_all()
        return RepoPermission(repo_key=repo_key, user_id=user_id, owner=is_owner, permissions=perms)

    def upsert_permission(
        self,
        identity: Identity,
        credential: Credential,
        repo_key: str,
        user_id: str,
        permissions: PermissionSet,
    ) -> RepoPermission:
        repo, _ = self._authorize(identity, credential, repo_key, "can_manage_repo")
        if not user_id:
            raise ValidationError("Target user must not be empty.")
        self.store.upsert_user_permission(repo_key, user_id, permissions)
        if self.audit is not None:
            self.audit.log(identity.user_id, "permission.upsert", repo_key, user_id)
        return RepoPermission(
            repo_key=repo_key, user_id=user_id, owner=user_id == repo.owner_id,
            permissions=permissions,
        )

    def delete_permission(
        self, identity: Identity, credential: Credential, repo_key: str, user_id: str,
    ) -> bool:
        self._authorize(identity, credential, repo_key, "can_manage_repo")
        removed = self.store.delete_user_permission(repo_key, user_id)
        if removed and self.audit is not None:
            self.audit.log(identity.user_id, "permission.delete", repo_key, user_id)
        return removed

    # ------------------------------------------------------------------
    # Token scoping
    # ------------------------------------------------------------------

    def _check_token_owner(self, identity: Identity, token_id: str) -> None:
        if not token_id:
            raise ValidationError("Token id must not be empty.")
        owner = self.store.token_owner(token_id)
        if owner is not None and owner != identity.user_id:
            raise NotFoundError(f"Token not found: {token_id}")

    def grant_token_permission(
        self,
        identity: Identity,
        credential: Credential,
        repo_key: str,
        token_id: str,
        permissions: PermissionSet,
    ) -> TokenPermission:
        """Narrow one of the caller's own tokens to *permissions* on *repo_key*.

        The scope may only contain capabilities the caller currently
        holds there; a token cannot be given more than its user.
        """
        self._check_token_owner(identity, token_id)
        ceiling = self._effective(identity, credential, repo_key)
        if not ceiling.granted:
            raise UnauthorizedError(f"No access to repository '{repo_key}'.")
        for name in CAPABILITIES:
            if permissions.allows(name) and not ceiling.allows(name):
                raise PermissionDeniedError(name, repo_key)

        self.store.upsert_token_permission(token_id, repo_key, identity.user_id, permissions)
        if self.audit is not None:
            self.audit.log(identity.user_id, "token.grant", repo_key, token_id)
        return TokenPermission(
            token_id=token_id, repo_key=repo_key, user_id=identity.user_id, permissions=permissions,
        )

    def revoke_token_permission(
        self, identity: Identity, credential: Credential, repo_key: str, token_id: str,
    ) -> bool:
        """Drop the token's scope so it resolves like its user again."""
        self._check_token_owner(identity, token_id)
        self._effective(identity, credential, repo_key)
        removed = self.store.delete_token_permission(token_id, repo_key)
        if removed and self.audit is not None:
            self.audit.log(identity.user_id, "token.revoke", repo_key, token_id)
        return removed

    def list_token_permissions(self, identity: Identity, token_id: str) -> list[TokenPermission]:
        self._check_token_owner(identity, token_id)
        return [
            TokenPermission(token_id=token_id, repo_key=key, user_id=identity.user_id, permissions=perms)
            for key, perms in self.store.list_token_permissions(token_id)
        ]
