"""Exception hierarchy shared by the local engine and the sync protocol.

Every error raised by ChronoVCS derives from :class:`ChronoError`; the
five direct subclasses map onto the failure categories a caller needs to
distinguish (missing thing, lost race, damaged store, refused access,
bad input).
"""

from __future__ import annotations


class ChronoError(Exception):
    """Base class for all ChronoVCS errors."""


# -- NotFound -----------------------------------------------------------------


class NotFoundError(ChronoError):
    """A requested object, commit, ref, or repository does not exist."""


class BlobNotFoundError(NotFoundError):
    def __init__(self, digest: str) -> None:
        super().__init__(f"Object not found: {digest}")
        self.digest = digest


class CommitNotFoundError(NotFoundError):
    def __init__(self, commit_id: str) -> None:
        super().__init__(f"Commit not found: {commit_id}")
        self.commit_id = commit_id


class RefNotFoundError(NotFoundError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Branch not found: {name}")
        self.name = name


class RepositoryNotFoundError(NotFoundError):
    def __init__(self, location: str) -> None:
        super().__init__(f"Repository not found: {location}")
        self.location = location


# -- Conflict -----------------------------------------------------------------


class ConflictError(ChronoError):
    """The operation lost against the current state of its target."""


class RepositoryExistsError(ConflictError):
    """A repository is already present at the target location."""


class BranchExistsError(ConflictError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Branch already exists: {name}")
        self.name = name


class PushConflictError(ConflictError):
    """The pushed base commit is not the current head of the branch."""

    def __init__(self, branch: str, expected: str | None, actual: str | None) -> None:
        super().__init__(
            f"Push rejected for branch '{branch}': base commit "
            f"{expected or '<none>'} does not match remote head "
            f"{actual or '<none>'}. Pull first."
        )
        self.branch = branch
        self.expected = expected
        self.actual = actual


# -- Corruption ---------------------------------------------------------------


class CorruptionError(ChronoError):
    """Stored data cannot be read back or fails its integrity check."""

    def __init__(
        self,
        message: str,
        *,
        path: str | None = None,
        digest: str | None = None,
    ) -> None:
        detail = message
        if path:
            detail += f" (path={path})"
        if digest:
            detail += f" (id={digest})"
        super().__init__(detail)
        self.path = path
        self.digest = digest


# -- Unauthorized -------------------------------------------------------------


class UnauthorizedError(ChronoError):
    """The caller could not be authenticated for the repository."""


class PermissionDeniedError(UnauthorizedError):
    def __init__(self, capability: str, repo_key: str | None = None) -> None:
        target = f" on repository '{repo_key}'" if repo_key else ""
        super().__init__(f"Permission '{capability}' denied{target}.")
        self.capability = capability
        self.repo_key = repo_key


# -- Validation ---------------------------------------------------------------


class ValidationError(ChronoError):
    """Input was rejected before any state was changed."""


class SessionStateError(ValidationError):
    """A sync call was made from a state that does not allow it."""


# -- Transport ----------------------------------------------------------------


class TransportError(ChronoError):
    """The remote could not be reached or answered unexpectedly."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
