"""Local repository engine: objects, index, ignore rules, diffs, commits."""

from chronovcs.vcs.commits import Commit
from chronovcs.vcs.diff import ChangeType, DiffEngine, DiffResult, FileDiff
from chronovcs.vcs.ignore import IgnoreEngine, IgnoreRuleCache
from chronovcs.vcs.index import IndexEngine
from chronovcs.vcs.objects import ObjectStore
from chronovcs.vcs.repo import RepoManager

__all__ = [
    "ChangeType",
    "Commit",
    "DiffEngine",
    "DiffResult",
    "FileDiff",
    "IgnoreEngine",
    "IgnoreRuleCache",
    "IndexEngine",
    "ObjectStore",
    "RepoManager",
]
