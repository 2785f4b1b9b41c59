"""ChronoVCS — content-addressed version control with a remote sync protocol."""

__version__ = "1.0.0"

from chronovcs.config import ConfigManager
from chronovcs.errors import (
    ChronoError,
    ConflictError,
    CorruptionError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from chronovcs.release import ReleaseManager, SemanticVersion, compare
from chronovcs.security import AuditLogger, Hasher
from chronovcs.sync import SyncManager, SyncServer, SyncSession
from chronovcs.vcs import DiffEngine, IgnoreEngine, IndexEngine, ObjectStore, RepoManager

__all__ = [
    "AuditLogger",
    "ChronoError",
    "ConfigManager",
    "ConflictError",
    "CorruptionError",
    "DiffEngine",
    "Hasher",
    "IgnoreEngine",
    "IndexEngine",
    "NotFoundError",
    "ObjectStore",
    "ReleaseManager",
    "RepoManager",
    "SemanticVersion",
    "SyncManager",
    "SyncServer",
    "SyncSession",
    "UnauthorizedError",
    "ValidationError",
    "compare",
]
