"""Classify how a local branch relates to its remote counterpart.

No merging happens here: a diverged branch is reported, never resolved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Collection, Optional

from chronovcs.vcs.commits import Commit


class PullStrategy(str, Enum):
    UP_TO_DATE = "UP_TO_DATE"
    FAST_FORWARD = "FAST_FORWARD"
    LOCAL_AHEAD = "LOCAL_AHEAD"
    DIVERGED = "DIVERGED"


@dataclass
class PullAnalysis:
    """Outcome of comparing local and remote heads."""

    strategy: PullStrategy
    local_head: Optional[str]
    remote_head: Optional[str]
    incoming: list[Commit] = field(default_factory=list)

    @property
    def can_fast_forward(self) -> bool:
        return self.strategy is PullStrategy.FAST_FORWARD

    @property
    def has_conflicts(self) -> bool:
        return self.strategy is PullStrategy.DIVERGED


def analyze_pull(
    local_head: str | None,
    remote_head: str | None,
    remote_commits: list[Commit],
    local_ancestry: Collection[str],
) -> PullAnalysis:
    """Decide the pull strategy.

    Parameters
    ----------
    local_head, remote_head:
        Branch heads on each side (None for an empty branch).
    remote_commits:
        Remote history newest first, fetched down to (excluding)
        *local_head*.
    local_ancestry:
        Ids of every commit reachable from *local_head*.
    """
    if remote_head == local_head:
        return PullAnalysis(PullStrategy.UP_TO_DATE, local_head, remote_head)
    if remote_head is None or remote_head in local_ancestry:
        return PullAnalysis(PullStrategy.LOCAL_AHEAD, local_head, remote_head)
    if remote_commits and remote_commits[0].id == remote_head and remote_commits[-1].parent == local_head:
        return PullAnalysis(
            PullStrategy.FAST_FORWARD, local_head, remote_head, list(reversed(remote_commits)),
        )
    return PullAnalysis(PullStrategy.DIVERGED, local_head, remote_head)
