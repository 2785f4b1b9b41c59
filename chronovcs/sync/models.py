"""Payloads of the sync protocol and the permission record they carry."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import Field

from chronovcs.models import WireModel
from chronovcs.vcs.commits import Commit

CAPABILITIES = (
    "can_read",
    "can_pull",
    "can_push",
    "can_create_branch",
    "can_delete_branch",
    "can_merge",
    "can_create_tag",
    "can_delete_tag",
    "can_manage_repo",
    "can_bypass_task_policy",
)


class PermissionSet(WireModel):
    """Ten independent capabilities; none implies another."""

    can_read: bool = False
    can_pull: bool = False
    can_push: bool = False
    can_create_branch: bool = False
    can_delete_branch: bool = False
    can_merge: bool = False
    can_create_tag: bool = False
    can_delete_tag: bool = False
    can_manage_repo: bool = False
    can_bypass_task_policy: bool = False

    @classmethod
    def deny_all(cls) -> PermissionSet:
        return cls()

    @classmethod
    def allow_all(cls) -> PermissionSet:
        return cls(**{name: True for name in CAPABILITIES})

    def allows(self, capability: str) -> bool:
        if capability not in CAPABILITIES:
            raise KeyError(capability)
        return bool(getattr(self, capability))

    def as_row(self) -> tuple[int, ...]:
        return tuple(int(getattr(self, name)) for name in CAPABILITIES)

    @classmethod
    def from_row(cls, row) -> PermissionSet:
        return cls(**{name: bool(value) for name, value in zip(CAPABILITIES, row)})


# -- Identity -----------------------------------------------------------------


class CredentialKind(str, Enum):
    SESSION = "session"
    TOKEN = "token"


class Identity(WireModel):
    """An authenticated user as vouched for by the external auth service."""

    user_id: str
    email: str = ""
    user_uid: Optional[str] = None


class Credential(WireModel):
    """How the identity authenticated: an owner session or a scoped token."""

    kind: CredentialKind = CredentialKind.SESSION
    token_id: Optional[str] = None

    @classmethod
    def session(cls) -> Credential:
        return cls(kind=CredentialKind.SESSION)

    @classmethod
    def token(cls, token_id: str) -> Credential:
        return cls(kind=CredentialKind.TOKEN, token_id=token_id)


# -- Repository ---------------------------------------------------------------


class VersioningMode(str, Enum):
    PROJECT = "project"
    OBJECT = "object"


class RepositoryInfo(WireModel):
    repo_key: str
    name: str
    description: str = ""
    owner_id: str
    private_repo: bool = True
    versioning_mode: VersioningMode = VersioningMode.PROJECT
    default_branch: str = "main"
    release_enabled: bool = False


# -- Handshake ----------------------------------------------------------------


class HandshakeUser(WireModel):
    id: str
    user_uid: Optional[str] = None
    email: str = ""


class HandshakeRepository(WireModel):
    repo_key: str
    name: str
    description: str = ""
    private_repo: bool = True
    versioning_mode: VersioningMode = VersioningMode.PROJECT
    default_branch: str = "main"


class HandshakeResponse(WireModel):
    success: bool
    user: Optional[HandshakeUser] = None
    repository: Optional[HandshakeRepository] = None
    permissions: PermissionSet = Field(default_factory=PermissionSet)


# -- Clone / pull -------------------------------------------------------------


class RefsResponse(WireModel):
    default_branch: str
    branches: dict[str, str] = Field(default_factory=dict)


class CommitHistoryResponse(WireModel):
    commits: list[Commit] = Field(default_factory=list)
    has_more: bool = False


class BatchObjectsRequest(WireModel):
    hashes: list[str] = Field(default_factory=list)


class BatchObjectsResponse(WireModel):
    """``digest -> base64 content``; unknown digests are simply absent."""

    objects: dict[str, str] = Field(default_factory=dict)


# -- Push ---------------------------------------------------------------------


class PushRequest(WireModel):
    branch: str
    base_commit_id: Optional[str] = None
    new_commit: Commit
    blobs: dict[str, str] = Field(default_factory=dict)


class PushResult(WireModel):
    branch: str
    new_head_commit_id: str
    fast_forward: bool = True


# -- Permission administration --------------------------------------------------


class RepoPermission(WireModel):
    repo_key: str
    user_id: str
    owner: bool = False
    permissions: PermissionSet = Field(default_factory=PermissionSet)


class TokenPermission(WireModel):
    token_id: str
    repo_key: str
    user_id: str
    permissions: PermissionSet = Field(default_factory=PermissionSet)


# -- Branch administration ------------------------------------------------------


class BranchResponse(WireModel):
    branch_name: str
    head_commit_id: Optional[str] = None
    is_default: bool = False
