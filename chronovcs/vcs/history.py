"""History traversal and log formatting.

Traversal follows the single ``parent`` link from a starting commit,
newest first.  A parent that cannot be loaded, or a commit reached
twice, means the store is damaged and raises :class:`CorruptionError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator

from chronovcs.errors import CommitNotFoundError, CorruptionError
from chronovcs.vcs.commits import Commit

logger = logging.getLogger(__name__)


def iter_history(
    load: Callable[[str], Commit],
    start: str | None,
    limit: int | None = None,
    stop_at: str | None = None,
) -> Iterator[Commit]:
    """Yield commits from *start* back towards the root.

    Parameters
    ----------
    load:
        Callable returning the commit for an id, raising
        :class:`CommitNotFoundError` when it is absent.
    start:
        First commit to yield.  ``None`` yields nothing.
    limit:
        Maximum number of commits to yield.
    stop_at:
        Commit id at which to stop, exclusive.
    """
    seen: set[str] = set()
    current = start
    count = 0
    child: str | None = None
    while current is not None and current != stop_at:
        if limit is not None and count >= limit:
            return
        if current in seen:
            raise CorruptionError("Cycle in commit history", digest=current)
        seen.add(current)
        try:
            commit = load(current)
        except CommitNotFoundError as exc:
            if child is None:
                raise
            raise CorruptionError(
                f"Parent of commit {child} is missing", digest=current,
            ) from exc
        yield commit
        count += 1
        child = current
        current = commit.parent


# -- Log formatting ---------------------------------------------------------


class LogFormat(str, Enum):
    FULL = "full"
    ONELINE = "oneline"
    SHORT = "short"


@dataclass
class LogEntry:
    """A commit decorated with the refs that point at it."""

    commit_id: str
    parent_id: str | None
    author: str
    timestamp: str
    message: str
    branches: list[str] = field(default_factory=list)
    is_head: bool = False

    @property
    def short_id(self) -> str:
        return self.commit_id[:7]

    @property
    def subject(self) -> str:
        return self.message.splitlines()[0] if self.message else ""

    @classmethod
    def from_commit(cls, commit: Commit, branches: list[str] | None = None,
                    is_head: bool = False) -> LogEntry:
        return cls(
            commit_id=commit.id,
            parent_id=commit.parent,
            author=commit.author,
            timestamp=commit.timestamp,
            message=commit.message,
            branches=sorted(branches or []),
            is_head=is_head,
        )


def _decoration(entry: LogEntry, current_branch: str | None) -> str:
    labels: list[str] = []
    for name in entry.branches:
        if entry.is_head and name == current_branch:
            labels.insert(0, f"HEAD -> {name}")
        else:
            labels.append(name)
    if entry.is_head and current_branch is None:
        labels.insert(0, "HEAD")
    return f" ({', '.join(labels)})" if labels else ""


def format_log(
    entries: list[LogEntry],
    fmt: LogFormat | str = LogFormat.FULL,
    current_branch: str | None = None,
) -> str:
    """Render *entries* as text in the requested layout."""
    fmt = LogFormat(fmt)
    lines: list[str] = []
    for entry in entries:
        deco = _decoration(entry, current_branch)
        if fmt is LogFormat.ONELINE:
            lines.append(f"{entry.short_id}{deco} {entry.subject}")
        elif fmt is LogFormat.SHORT:
            lines.append(f"commit {entry.commit_id}{deco}")
            lines.append(f"Author: {entry.author}")
            lines.append("")
            lines.append(f"    {entry.subject}")
            lines.append("")
        else:
            lines.append(f"commit {entry.commit_id}{deco}")
            lines.append(f"Author: {entry.author}")
            lines.append(f"Date:   {entry.timestamp}")
            lines.append("")
            lines.extend(f"    {line}" for line in entry.message.splitlines())
            lines.append("")
    return "\n".join(lines).rstrip("\n")
