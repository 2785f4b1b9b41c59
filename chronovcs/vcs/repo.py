"""RepoManager — initialise, locate, and operate on a ChronoVCS repository.

The manager ties together the on-disk pieces under ``.vcs``: object
store, commit store, refs, and the staging index.  Working-tree
operations (staging, diff, checkout, branching) live in sibling modules
and take a :class:`RepoManager`.
"""

from __future__ import annotations

import configparser
import logging
from dataclasses import dataclass
from pathlib import Path

from chronovcs.config import (
    COMMITS_DIR,
    CONFIG_FILE,
    DEFAULT_BRANCH,
    DEFAULT_VERSIONING_MODE,
    OBJECTS_DIR,
    REFS_HEADS_DIR,
    VCS_DIR,
    ConfigManager,
)
from chronovcs.errors import (
    CorruptionError,
    RepositoryExistsError,
    RepositoryNotFoundError,
    ValidationError,
)
from chronovcs.vcs.commits import Commit, CommitStore, build_commit
from chronovcs.vcs.fileio import atomic_write_text
from chronovcs.vcs.history import LogEntry, iter_history
from chronovcs.vcs.ignore import IgnoreEngine
from chronovcs.vcs.index import IndexEngine
from chronovcs.vcs.locking import repo_lock
from chronovcs.vcs.objects import ObjectStore
from chronovcs.vcs.refs import RefStore, validate_branch_name
from chronovcs.vcs.staging import stage_paths, unstage_paths

logger = logging.getLogger(__name__)

_VERSIONING_MODES = ("project", "object")


@dataclass
class RepoConfig:
    """The ``[repository]`` section of ``.vcs/config``."""

    default_branch: str = DEFAULT_BRANCH
    versioning_mode: str = DEFAULT_VERSIONING_MODE

    @classmethod
    def load(cls, vcs_dir: Path) -> RepoConfig:
        path = vcs_dir / CONFIG_FILE
        parser = configparser.ConfigParser()
        try:
            parser.read_string(path.read_text(encoding="utf-8"), source=str(path))
        except FileNotFoundError:
            logger.warning("No config at %s; using defaults", path)
            return cls()
        except configparser.Error as exc:
            raise CorruptionError(f"Unreadable config: {exc}", path=str(path)) from exc
        section = parser["repository"] if parser.has_section("repository") else {}
        return cls(
            default_branch=section.get("default_branch", DEFAULT_BRANCH),
            versioning_mode=section.get("versioning_mode", DEFAULT_VERSIONING_MODE),
        )

    def save(self, vcs_dir: Path) -> None:
        text = (
            "[repository]\n"
            f"default_branch={self.default_branch}\n"
            f"versioning_mode={self.versioning_mode}\n"
        )
        atomic_write_text(vcs_dir / CONFIG_FILE, text)


class RepoManager:
    """Manage a ChronoVCS working tree.

    Parameters
    ----------
    path:
        Root directory of the working tree.  Can be an existing repository
        or a directory to initialise.
    ignore:
        Optional shared :class:`IgnoreEngine`; each manager gets its own
        otherwise.
    """

    def __init__(self, path: str | Path, ignore: IgnoreEngine | None = None) -> None:
        self.path = Path(path).resolve()
        self.vcs_dir = self.path / VCS_DIR
        self.objects = ObjectStore(self.vcs_dir / OBJECTS_DIR)
        self.commits = CommitStore(self.path)
        self.refs = RefStore(self.path)
        self.ignore = ignore or IgnoreEngine()

    def __repr__(self) -> str:
        return f"RepoManager({str(self.path)!r})"

    # -- Initialisation -------------------------------------------------------

    def init_repo(
        self,
        default_branch: str = DEFAULT_BRANCH,
        versioning_mode: str = DEFAULT_VERSIONING_MODE,
    ) -> Path:
        """Create the ``.vcs`` layout with an unborn default branch.

        Raises :class:`RepositoryExistsError` if ``.vcs`` is already
        present; nothing on disk is touched in that case.

        Returns the repository root.
        """
        branch = validate_branch_name(default_branch)
        if versioning_mode not in _VERSIONING_MODES:
            raise ValidationError(f"Unknown versioning mode: {versioning_mode!r}")

        with repo_lock(self.path):
            if self.vcs_dir.exists():
                raise RepositoryExistsError(
                    f"A ChronoVCS repository already exists in {self.path}"
                )
            self.path.mkdir(parents=True, exist_ok=True)
            (self.vcs_dir / OBJECTS_DIR).mkdir(parents=True)
            (self.vcs_dir / COMMITS_DIR).mkdir(parents=True)
            (self.vcs_dir / REFS_HEADS_DIR).mkdir(parents=True)
            self.refs.write_ref(branch, None)
            self.refs.set_head_branch(branch)
            RepoConfig(branch, versioning_mode).save(self.vcs_dir)

        logger.info("Initialised ChronoVCS repository at %s (branch %s)", self.path, branch)
        return self.path

    @classmethod
    def discover(cls, start: str | Path = ".") -> RepoManager:
        """Return the manager for the repository containing *start*."""
        current = Path(start).resolve()
        for candidate in (current, *current.parents):
            if (candidate / VCS_DIR).is_dir():
                return cls(candidate)
        raise RepositoryNotFoundError(str(current))

    # -- Status / info --------------------------------------------------------

    def is_repo(self) -> bool:
        """Return *True* if *self.path* holds a ``.vcs`` directory."""
        return self.vcs_dir.is_dir()

    def require_repo(self) -> None:
        if not self.is_repo():
            raise RepositoryNotFoundError(str(self.path))

    def config(self) -> RepoConfig:
        return RepoConfig.load(self.vcs_dir)

    def current_branch(self) -> str | None:
        """Return the checked-out branch, or None when HEAD is detached."""
        return self.refs.current_branch()

    def head_commit_id(self) -> str | None:
        return self.refs.head_commit_id()

    def head_commit(self) -> Commit | None:
        head = self.head_commit_id()
        return self.commits.load(head) if head else None

    def load_index(self) -> IndexEngine:
        return IndexEngine.load(self.path)

    def default_author(self) -> str:
        return ConfigManager().load_config(self.path)["CHRONO_AUTHOR"]

    # -- Stage / commit -------------------------------------------------------

    def stage(self, *paths: str | Path) -> list[str]:
        """Stage one or more paths for commit.  Returns the paths staged."""
        return stage_paths(self, paths)

    def unstage(self, *paths: str | Path) -> list[str]:
        return unstage_paths(self, paths)

    def commit(self, message: str, author: str | None = None) -> Commit:
        """Snapshot the index as a new commit on the current HEAD.

        The commit file is written before the ref moves, so a crash in
        between leaves an unreferenced commit and an unchanged branch.
        """
        self.require_repo()
        with repo_lock(self.path):
            index = self.load_index()
            parent = self.head_commit_id()
            branch = self.current_branch() or ""
            commit = build_commit(
                files=index.snapshot(),
                message=message,
                author=author or self.default_author(),
                branch=branch,
                parent=parent,
            )
            self.commits.save(commit)
            self.refs.advance_head(commit.id)

        logger.info("Committed %s on %s: %s", commit.id[:7], branch or "detached HEAD",
                    commit.message.splitlines()[0])
        return commit

    # -- History --------------------------------------------------------------

    def history(
        self,
        start: str | None = None,
        limit: int | None = None,
    ) -> list[Commit]:
        """Return commits from *start* (default HEAD), newest first."""
        origin = start if start is not None else self.head_commit_id()
        return list(iter_history(self.commits.load, origin, limit=limit))

    def log(self, limit: int | None = None) -> list[LogEntry]:
        """Return :class:`LogEntry` records for HEAD's history with ref decorations."""
        head = self.head_commit_id()
        by_commit: dict[str, list[str]] = {}
        for name, commit_id in self.refs.list_refs().items():
            if commit_id:
                by_commit.setdefault(commit_id, []).append(name)
        return [
            LogEntry.from_commit(c, by_commit.get(c.id), is_head=c.id == head)
            for c in self.history(head, limit)
        ]
