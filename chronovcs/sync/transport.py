"""Transports carrying sync calls from a client to a server.

:class:`LocalTransport` calls a :class:`SyncServer` in-process.
:class:`HttpTransport` speaks JSON over HTTP with ``urllib``.
"""

from __future__ import annotations

import base64
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from typing import Any, Iterable

from chronovcs.errors import (
    ConflictError,
    NotFoundError,
    TransportError,
    UnauthorizedError,
    ValidationError,
)
from chronovcs.release.models import CreateReleaseRequest, RecommendVersionResponse, ReleaseResponse
from chronovcs.release.semver import VersionType
from chronovcs.sync.models import (
    BatchObjectsRequest,
    BatchObjectsResponse,
    CommitHistoryResponse,
    Credential,
    HandshakeResponse,
    Identity,
    PushRequest,
    PushResult,
    RefsResponse,
)
from chronovcs.sync.server import SyncServer

logger = logging.getLogger(__name__)


class SyncTransport(ABC):
    """Request/response calls against one remote repository."""

    repo_key: str

    @abstractmethod
    def handshake(self) -> HandshakeResponse: ...

    @abstractmethod
    def get_refs(self) -> RefsResponse: ...

    @abstractmethod
    def get_commit_history(
        self,
        branch: str,
        since_commit: str | None = None,
        limit: int | None = None,
        from_commit: str | None = None,
    ) -> CommitHistoryResponse: ...

    @abstractmethod
    def get_batch_objects(self, hashes: Iterable[str]) -> BatchObjectsResponse: ...

    @abstractmethod
    def push(self, request: PushRequest) -> PushResult: ...

    @abstractmethod
    def recommend_version(self, task_types: Iterable[VersionType | str] = ()) -> RecommendVersionResponse: ...

    @abstractmethod
    def create_release(self, request: CreateReleaseRequest) -> ReleaseResponse: ...


class LocalTransport(SyncTransport):
    """Bind an identity and credential to a :class:`SyncServer` in the same process."""

    def __init__(
        self,
        server: SyncServer,
        identity: Identity,
        credential: Credential,
        repo_key: str,
    ) -> None:
        self.server = server
        self.identity = identity
        self.credential = credential
        self.repo_key = repo_key

    def _who(self) -> tuple[Identity, Credential, str]:
        return self.identity, self.credential, self.repo_key

    def handshake(self) -> HandshakeResponse:
        return self.server.handshake(*self._who())

    def get_refs(self) -> RefsResponse:
        return self.server.get_refs(*self._who())

    def get_commit_history(self, branch, since_commit=None, limit=None, from_commit=None):
        return self.server.get_commit_history(
            *self._who(), branch, since_commit=since_commit, limit=limit, from_commit=from_commit,
        )

    def get_batch_objects(self, hashes):
        return self.server.get_batch_objects(*self._who(), list(hashes))

    def push(self, request: PushRequest) -> PushResult:
        return self.server.push(*self._who(), request)

    def recommend_version(self, task_types=()):
        return self.server.recommend_version(*self._who(), task_types)

    def create_release(self, request: CreateReleaseRequest) -> ReleaseResponse:
        return self.server.create_release(*self._who(), request)


_STATUS_ERRORS: dict[int, type] = {
    400: ValidationError,
    401: UnauthorizedError,
    403: UnauthorizedError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
}


class HttpTransport(SyncTransport):
    """JSON-over-HTTP client for ``/api/repositories/<repoKey>/...``.

    Parameters
    ----------
    base_url:
        Server root, e.g. ``https://vcs.example.com``.
    repo_key:
        Repository to talk to.
    email, token:
        Sent as HTTP Basic credentials.
    timeout:
        Socket timeout per request, in seconds.
    """

    def __init__(
        self,
        base_url: str,
        repo_key: str,
        email: str,
        token: str,
        *,
        timeout: float = 30.0,
    ) -> None:
        if not base_url or not repo_key:
            raise ValidationError("Remote base URL and repository key are required.")
        self.base_url = base_url.rstrip("/")
        self.repo_key = repo_key
        self.timeout = timeout
        raw = f"{email}:{token}".encode("utf-8")
        self._auth = "Basic " + base64.b64encode(raw).decode("ascii")

    def _url(self, path: str, query: dict[str, Any] | None = None) -> str:
        repo = urllib.parse.quote(self.repo_key, safe="")
        url = f"{self.base_url}/api/repositories/{repo}{path}"
        params = {k: v for k, v in (query or {}).items() if v is not None}
        if params:
            url += "?" + urllib.parse.urlencode(params, doseq=True)
        return url

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        query: dict[str, Any] | None = None,
    ) -> Any:
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(
            self._url(path, query),
            data=data,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "Authorization": self._auth,
            },
            method=method,
        )
        logger.debug("%s %s", method, req.full_url)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise self._error_for(exc) from exc
        except (urllib.error.URLError, OSError, TimeoutError) as exc:
            raise TransportError(f"Cannot reach {self.base_url}: {exc}") from exc
        try:
            return json.loads(raw) if raw else {}
        except json.JSONDecodeError as exc:
            raise TransportError(f"Invalid JSON from {req.full_url}") from exc

    @staticmethod
    def _error_for(exc: urllib.error.HTTPError) -> Exception:
        message = exc.reason or f"HTTP {exc.code}"
        try:
            payload = json.loads(exc.read().decode("utf-8") or "{}")
            if isinstance(payload, dict):
                message = payload.get("message") or payload.get("error") or message
        except (json.JSONDecodeError, OSError, UnicodeDecodeError, AttributeError):
            logger.debug("Error body of HTTP %s is not JSON", exc.code)
        error_type = _STATUS_ERRORS.get(exc.code)
        if error_type is None:
            return TransportError(f"HTTP {exc.code}: {message}", status=exc.code)
        return error_type(str(message))

    # -- Protocol -------------------------------------------------------------

    def handshake(self) -> HandshakeResponse:
        return HandshakeResponse.from_wire(self._request("POST", "/handshake"))

    def get_refs(self) -> RefsResponse:
        return RefsResponse.from_wire(self._request("GET", "/refs"))

    def get_commit_history(self, branch, since_commit=None, limit=None, from_commit=None):
        query = {
            "branch": branch,
            "sinceCommit": since_commit,
            "limit": limit,
            "fromCommit": from_commit,
        }
        return CommitHistoryResponse.from_wire(self._request("GET", "/commits", query=query))

    def get_batch_objects(self, hashes):
        body = BatchObjectsRequest(hashes=list(hashes)).to_wire()
        return BatchObjectsResponse.from_wire(self._request("POST", "/objects/batch", body))

    def push(self, request: PushRequest) -> PushResult:
        return PushResult.from_wire(self._request("POST", "/push", request.to_wire()))

    def recommend_version(self, task_types=()):
        query = {"taskTypes": [VersionType.coerce(t).value for t in task_types] or None}
        return RecommendVersionResponse.from_wire(
            self._request("GET", "/releases/recommend", query=query)
        )

    def create_release(self, request: CreateReleaseRequest) -> ReleaseResponse:
        return ReleaseResponse.from_wire(self._request("POST", "/releases", request.to_wire()))
