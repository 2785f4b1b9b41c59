"""Remote synchronization: permissions, server, transports, client workflows."""

from chronovcs.sync.conflict import PullAnalysis, PullStrategy, analyze_pull
from chronovcs.sync.manager import SyncManager
from chronovcs.sync.models import Credential, CredentialKind, Identity, PermissionSet
from chronovcs.sync.permissions import EffectivePermission, PermissionResolver, PermissionSource
from chronovcs.sync.server import SyncServer
from chronovcs.sync.session import SessionState, SyncSession
from chronovcs.sync.store import ServerStore
from chronovcs.sync.transport import HttpTransport, LocalTransport, SyncTransport

__all__ = [
    "Credential",
    "CredentialKind",
    "EffectivePermission",
    "HttpTransport",
    "Identity",
    "LocalTransport",
    "PermissionResolver",
    "PermissionSet",
    "PermissionSource",
    "PullAnalysis",
    "PullStrategy",
    "ServerStore",
    "SessionState",
    "SyncManager",
    "SyncServer",
    "SyncSession",
    "SyncTransport",
    "analyze_pull",
]
