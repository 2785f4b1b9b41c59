"""Release payloads shared by the local manager and the sync server."""

from __future__ import annotations

from typing import Optional

from pydantic import Field

from chronovcs.models import WireModel, utc_now
from chronovcs.release.semver import VersionType


class ReleaseTask(WireModel):
    """A work item shipped with a release and the bump it implies."""

    key: str
    issue_type: str = ""
    version_type: VersionType = VersionType.MINOR


class RecommendVersionResponse(WireModel):
    current_version: str
    recommended_version: str
    version_type: VersionType
    reason: str
    breakdown: dict[str, int] = Field(default_factory=dict)


class CreateReleaseRequest(WireModel):
    version: Optional[str] = None
    version_type: Optional[VersionType] = None
    message: str = ""
    tasks: list[ReleaseTask] = Field(default_factory=list)


class ReleaseResponse(WireModel):
    id: Optional[int] = None
    version: str
    version_type: Optional[VersionType] = None
    message: str = ""
    snapshot_commit_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)
    tasks: list[ReleaseTask] = Field(default_factory=list)
