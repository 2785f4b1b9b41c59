"""SyncSession — client-side protocol state machine.

::

    UNAUTHENTICATED --handshake--> HANDSHAKEN --sync call--> SYNCING
          |                             ^                       |
          |                             +--permission failure---+
          +------------------ close() --> CLOSED <--------------+

Only ``handshake`` is legal before authentication; sync calls are legal
from HANDSHAKEN or SYNCING.  The permissions returned by the handshake
gate each call locally before it is sent; the server checks again.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Iterable, TypeVar

from chronovcs.errors import PermissionDeniedError, SessionStateError, UnauthorizedError
from chronovcs.release.models import CreateReleaseRequest, RecommendVersionResponse, ReleaseResponse
from chronovcs.release.semver import VersionType
from chronovcs.sync.models import (
    BatchObjectsResponse,
    CommitHistoryResponse,
    HandshakeResponse,
    PermissionSet,
    PushRequest,
    PushResult,
    RefsResponse,
)
from chronovcs.sync.transport import SyncTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    HANDSHAKEN = "handshaken"
    SYNCING = "syncing"
    CLOSED = "closed"


class SyncSession:
    """One conversation with a remote repository over *transport*."""

    def __init__(self, transport: SyncTransport) -> None:
        self.transport = transport
        self.state = SessionState.UNAUTHENTICATED
        self.handshake_response: HandshakeResponse | None = None

    def __enter__(self) -> SyncSession:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def permissions(self) -> PermissionSet:
        if self.handshake_response is None:
            return PermissionSet.deny_all()
        return self.handshake_response.permissions

    # -- Transitions ----------------------------------------------------------

    def handshake(self) -> HandshakeResponse:
        if self.state is not SessionState.UNAUTHENTICATED:
            raise SessionStateError(f"Handshake is not allowed in state {self.state.value}.")
        response = self.transport.handshake()
        if not response.success:
            logger.info("Handshake with %s refused", self.transport.repo_key)
            raise UnauthorizedError(
                f"Access to repository '{self.transport.repo_key}' was refused."
            )
        self.handshake_response = response
        self.state = SessionState.HANDSHAKEN
        logger.debug("Handshake with %s succeeded", self.transport.repo_key)
        return response

    def close(self) -> None:
        self.state = SessionState.CLOSED

    def _call(self, capability: str, fn: Callable[[], T]) -> T:
        if self.state not in (SessionState.HANDSHAKEN, SessionState.SYNCING):
            raise SessionStateError(f"Sync calls are not allowed in state {self.state.value}.")
        if not self.permissions.allows(capability):
            self.state = SessionState.HANDSHAKEN
            raise PermissionDeniedError(capability, self.transport.repo_key)
        self.state = SessionState.SYNCING
        try:
            return fn()
        except UnauthorizedError:
            self.state = SessionState.HANDSHAKEN
            raise

    # -- Protocol calls -------------------------------------------------------

    def get_refs(self) -> RefsResponse:
        return self._call("can_read", self.transport.get_refs)

    def get_commit_history(
        self,
        branch: str,
        since_commit: str | None = None,
        limit: int | None = None,
        from_commit: str | None = None,
    ) -> CommitHistoryResponse:
        return self._call(
            "can_pull",
            lambda: self.transport.get_commit_history(
                branch, since_commit=since_commit, limit=limit, from_commit=from_commit,
            ),
        )

    def get_batch_objects(self, hashes: Iterable[str]) -> BatchObjectsResponse:
        wanted = list(hashes)
        return self._call("can_pull", lambda: self.transport.get_batch_objects(wanted))

    def push(self, request: PushRequest) -> PushResult:
        return self._call("can_push", lambda: self.transport.push(request))

    def recommend_version(self, task_types: Iterable[VersionType | str] = ()) -> RecommendVersionResponse:
        types = list(task_types)
        return self._call("can_read", lambda: self.transport.recommend_version(types))

    def create_release(self, request: CreateReleaseRequest) -> ReleaseResponse:
        return self._call("can_create_tag", lambda: self.transport.create_release(request))
