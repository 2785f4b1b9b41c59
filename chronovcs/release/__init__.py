"""Semantic versioning and release recording."""

from chronovcs.release.manager import ReleaseManager, ReleaseState
from chronovcs.release.models import (
    CreateReleaseRequest,
    RecommendVersionResponse,
    ReleaseResponse,
    ReleaseTask,
)
from chronovcs.release.semver import SemanticVersion, VersionType, compare

__all__ = [
    "CreateReleaseRequest",
    "RecommendVersionResponse",
    "ReleaseManager",
    "ReleaseResponse",
    "ReleaseState",
    "ReleaseTask",
    "SemanticVersion",
    "VersionType",
    "compare",
]
