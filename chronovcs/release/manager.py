"""ReleaseManager — local release state and version recommendation.

A repository records at most one current release in ``.vcs/RELEASE``::

    version=1.4.0
    commit=<commit id>

The ``commit`` line is omitted when the release was cut before any
commit existed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from chronovcs.config import RELEASE_FILE, VCS_DIR
from chronovcs.errors import ValidationError
from chronovcs.release.classifier import build_breakdown, pick_version_type
from chronovcs.release.models import RecommendVersionResponse, ReleaseResponse, ReleaseTask
from chronovcs.release.semver import SemanticVersion, VersionType, compare
from chronovcs.vcs.fileio import atomic_write_text
from chronovcs.vcs.history import iter_history
from chronovcs.vcs.locking import repo_lock
from chronovcs.vcs.repo import RepoManager

logger = logging.getLogger(__name__)

AUTO = "auto"


@dataclass
class ReleaseState:
    version: str
    commit_id: Optional[str] = None

    @staticmethod
    def path_for(root: str | Path) -> Path:
        return Path(root) / VCS_DIR / RELEASE_FILE

    @classmethod
    def load(cls, root: str | Path) -> ReleaseState | None:
        """Return the recorded release, or None when absent or blank."""
        path = cls.path_for(root)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        values: dict[str, str] = {}
        for line in text.splitlines():
            if "=" in line:
                key, value = line.split("=", 1)
                values[key.strip()] = value.strip()
        version = values.get("version", "")
        if not version:
            return None
        return cls(version, values.get("commit") or None)

    def save(self, root: str | Path) -> None:
        lines = [f"version={self.version}"]
        if self.commit_id:
            lines.append(f"commit={self.commit_id}")
        atomic_write_text(self.path_for(root), "\n".join(lines) + "\n")


def resolve_version(
    current: str,
    requested: str | None,
    version_type: VersionType | str | None,
    fallback_type: VersionType,
) -> tuple[str, VersionType]:
    """Decide the next version string and its bump type.

    An explicit *requested* version must be well formed and newer than
    *current*.  ``None``, blank, or ``"auto"`` bumps *current* by
    *version_type*, or by *fallback_type* when no type is given.
    """
    base = SemanticVersion.parse(current)
    if requested and requested.strip() and requested.strip().lower() != AUTO:
        target = SemanticVersion.parse(requested)
        if compare(str(target), current) <= 0:
            raise ValidationError(
                f"Release version {target} must be greater than current version {current}."
            )
        if version_type is not None:
            kind = VersionType.coerce(version_type)
        elif target.major != base.major:
            kind = VersionType.MAJOR
        elif target.minor != base.minor:
            kind = VersionType.MINOR
        else:
            kind = VersionType.PATCH
        return str(target), kind

    kind = VersionType.coerce(version_type) if version_type is not None else fallback_type
    return str(base.bump(kind)), kind


class ReleaseManager:
    """Cut releases for one local repository.

    Parameters
    ----------
    repo:
        The repository whose HEAD history drives recommendations.
    """

    def __init__(self, repo: RepoManager) -> None:
        self.repo = repo

    def state(self) -> ReleaseState | None:
        return ReleaseState.load(self.repo.path)

    def current_version(self) -> str:
        state = self.state()
        return state.version if state else "0.0.0"

    def pending_messages(self) -> list[str]:
        """Messages of HEAD commits not covered by the current release."""
        state = self.state()
        stop = state.commit_id if state else None
        head = self.repo.head_commit_id()
        return [c.message for c in iter_history(self.repo.commits.load, head, stop_at=stop)]

    def recommend_version(
        self,
        tasks: Iterable[ReleaseTask] = (),
    ) -> RecommendVersionResponse:
        current = self.current_version()
        breakdown = build_breakdown(
            self.pending_messages(), [t.version_type for t in tasks],
        )
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
        version: str | None = AUTO,
        message: str = "",
        tasks: Iterable[ReleaseTask] = (),
        version_type: VersionType | str | None = None,
        created_by: str | None = None,
    ) -> ReleaseResponse:
        """Record a new release bound to the current HEAD commit."""
        self.repo.require_repo()
        task_list = list(tasks)
        with repo_lock(self.repo.path):
            current = self.current_version()
            recommended = self.recommend_version(task_list).version_type
            new_version, kind = resolve_version(current, version, version_type, recommended)
            head = self.repo.head_commit_id()
            ReleaseState(new_version, head).save(self.repo.path)

        logger.info("Released %s (%s) at %s", new_version, kind.value, head or "<no commit>")
        return ReleaseResponse(
            version=new_version,
            version_type=kind,
            message=message,
            snapshot_commit_id=head,
            created_by=created_by or self.repo.default_author(),
            tasks=task_list,
        )
