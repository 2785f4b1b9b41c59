"""Effective-permission resolution for repository access.

Sources are consulted highest first and the first match wins:

1. token override: the credential is a scoped token with its own
   permission record for the repository;
2. user-repo record: an explicit per-user grant;
3. ownership: the repository owner holds every capability.

No match yields a deny-all set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from chronovcs.errors import PermissionDeniedError, RepositoryNotFoundError, ValidationError
from chronovcs.sync.models import CAPABILITIES, Credential, CredentialKind, Identity, PermissionSet
from chronovcs.sync.store import ServerStore

logger = logging.getLogger(__name__)


class PermissionSource(str, Enum):
    TOKEN_OVERRIDE = "TOKEN_OVERRIDE"
    USER_REPO = "USER_REPO"
    OWNER = "OWNER"
    NONE = "NONE"


@dataclass(frozen=True)
class EffectivePermission:
    permissions: PermissionSet
    source: PermissionSource
    token_id: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.source is not PermissionSource.NONE

    def allows(self, capability: str) -> bool:
        return self.permissions.allows(capability)


class PermissionResolver:
    """Resolve what an identity may do in a repository.

    Parameters
    ----------
    store:
        The server store holding repositories and permission records.
        The resolver only reads from it.
    """

    def __init__(self, store: ServerStore) -> None:
        self.store = store

    def resolve(
        self,
        repo_key: str,
        identity: Identity,
        credential: Credential,
    ) -> EffectivePermission:
        if not repo_key or not repo_key.strip():
            raise ValidationError("Repository key must not be empty.")
        repo = self.store.get_repository(repo_key)
        if repo is None:
            raise RepositoryNotFoundError(repo_key)

        if credential.kind is CredentialKind.TOKEN and credential.token_id:
            scoped = self.store.get_token_permission(credential.token_id, repo_key)
            if scoped is not None and scoped[0] == identity.user_id:
                return EffectivePermission(
                    scoped[1], PermissionSource.TOKEN_OVERRIDE, credential.token_id,
                )

        token_id = credential.token_id if credential.kind is CredentialKind.TOKEN else None

        explicit = self.store.get_user_permission(repo_key, identity.user_id)
        if explicit is not None:
            return EffectivePermission(explicit, PermissionSource.USER_REPO, token_id)

        if repo.owner_id == identity.user_id:
            return EffectivePermission(PermissionSet.allow_all(), PermissionSource.OWNER, token_id)

        logger.debug("No permission source for %s on %s", identity.user_id, repo_key)
        return EffectivePermission(PermissionSet.deny_all(), PermissionSource.NONE, token_id)


def require(effective: EffectivePermission, capability: str, repo_key: str | None = None) -> None:
    """Raise :class:`PermissionDeniedError` unless *capability* is granted."""
    if capability not in CAPABILITIES:
        raise ValidationError(f"Unknown capability: {capability!r}")
    if not effective.allows(capability):
        raise PermissionDeniedError(capability, repo_key)
