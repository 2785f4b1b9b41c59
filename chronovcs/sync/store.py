"""ServerStore — authoritative SQLite storage behind a sync server.

All access goes through one connection guarded by a lock; multi-row
writes (a push, a permission change) run inside a single transaction so
they either fully land or leave no trace.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterable, Optional

from chronovcs.errors import BranchExistsError, PushConflictError, RepositoryExistsError
from chronovcs.release.models import ReleaseResponse, ReleaseTask
from chronovcs.sync.models import CAPABILITIES, PermissionSet, RepositoryInfo, VersioningMode
from chronovcs.vcs.commits import Commit

logger = logging.getLogger(__name__)

_PERM_COLUMNS = ", ".join(CAPABILITIES)
_PERM_DDL = ",\n    ".join(f"{name} INTEGER NOT NULL DEFAULT 0" for name in CAPABILITIES)

_SCHEMA = f"""\
CREATE TABLE IF NOT EXISTS repositories (
    repo_key        TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    description     TEXT NOT NULL DEFAULT '',
    owner_id        TEXT NOT NULL,
    private_repo    INTEGER NOT NULL DEFAULT 1,
    versioning_mode TEXT NOT NULL DEFAULT 'project',
    default_branch  TEXT NOT NULL DEFAULT 'main',
    release_enabled INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS blobs (
    repo_key TEXT NOT NULL,
    hash     TEXT NOT NULL,
    content  BLOB NOT NULL,
    PRIMARY KEY (repo_key, hash)
);
CREATE TABLE IF NOT EXISTS commits (
    repo_key  TEXT NOT NULL,
    commit_id TEXT NOT NULL,
    parent    TEXT,
    branch    TEXT NOT NULL DEFAULT '',
    author    TEXT NOT NULL DEFAULT '',
    message   TEXT NOT NULL DEFAULT '',
    timestamp TEXT NOT NULL,
    files     TEXT NOT NULL,
    PRIMARY KEY (repo_key, commit_id)
);
CREATE TABLE IF NOT EXISTS branch_heads (
    repo_key TEXT NOT NULL,
    branch   TEXT NOT NULL,
    head     TEXT,
    PRIMARY KEY (repo_key, branch)
);
CREATE TABLE IF NOT EXISTS repo_permissions (
    repo_key TEXT NOT NULL,
    user_id  TEXT NOT NULL,
    {_PERM_DDL},
    PRIMARY KEY (repo_key, user_id)
);
CREATE TABLE IF NOT EXISTS token_permissions (
    token_id TEXT NOT NULL,
    repo_key TEXT NOT NULL,
    user_id  TEXT NOT NULL,
    {_PERM_DDL},
    PRIMARY KEY (token_id, repo_key)
);
CREATE TABLE IF NOT EXISTS releases (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    repo_key           TEXT NOT NULL,
    version            TEXT NOT NULL,
    version_type       TEXT,
    message            TEXT NOT NULL DEFAULT '',
    snapshot_commit_id TEXT,
    created_by         TEXT,
    created_at         TEXT NOT NULL,
    tasks              TEXT NOT NULL DEFAULT '[]',
    UNIQUE (repo_key, version)
);
"""


class ServerStore:
    """SQLite-backed repository state.

    Parameters
    ----------
    db_path:
        Path to the SQLite file.  Defaults to ``':memory:'``.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Repositories
    # ------------------------------------------------------------------

    def create_repository(self, info: RepositoryInfo) -> None:
        """Insert *info* together with its unborn default branch."""
        with self._lock, self._conn:
            try:
                self._conn.execute(
                    "INSERT INTO repositories (repo_key, name, description, owner_id, "
                    "private_repo, versioning_mode, default_branch, release_enabled) "
                    "VALUES (?,?,?,?,?,?,?,?)",
                    (info.repo_key, info.name, info.description, info.owner_id,
                     int(info.private_repo), info.versioning_mode.value,
                     info.default_branch, int(info.release_enabled)),
                )
            except sqlite3.IntegrityError:
                raise RepositoryExistsError(
                    f"Repository already exists: {info.repo_key}"
                ) from None
            self._conn.execute(
                "INSERT OR IGNORE INTO branch_heads (repo_key, branch, head) VALUES (?,?,NULL)",
                (info.repo_key, info.default_branch),
            )

    def get_repository(self, repo_key: str) -> RepositoryInfo | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT repo_key, name, description, owner_id, private_repo, "
                "versioning_mode, default_branch, release_enabled "
                "FROM repositories WHERE repo_key = ?",
                (repo_key,),
            ).fetchone()
        if row is None:
            return None
        return RepositoryInfo(
            repo_key=row[0], name=row[1], description=row[2], owner_id=row[3],
            private_repo=bool(row[4]), versioning_mode=VersioningMode(row[5]),
            default_branch=row[6], release_enabled=bool(row[7]),
        )

    def set_release_enabled(self, repo_key: str, enabled: bool) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE repositories SET release_enabled = ? WHERE repo_key = ?",
                (int(enabled), repo_key),
            )

    # ------------------------------------------------------------------
    # Refs, commits, blobs
    # ------------------------------------------------------------------

    def branch_heads(self, repo_key: str) -> dict[str, Optional[str]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT branch, head FROM branch_heads WHERE repo_key = ? ORDER BY branch",
                (repo_key,),
            ).fetchall()
        return {branch: head for branch, head in rows}

    def branch_head(self, repo_key: str, branch: str) -> str | None:
        with self._lock:
            return self._branch_head(repo_key, branch)

    def _branch_head(self, repo_key: str, branch: str) -> str | None:
        row = self._conn.execute(
            "SELECT head FROM branch_heads WHERE repo_key = ? AND branch = ?",
            (repo_key, branch),
        ).fetchone()
        return row[0] if row else None

    def has_branch(self, repo_key: str, branch: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM branch_heads WHERE repo_key = ? AND branch = ?",
                (repo_key, branch),
            ).fetchone()
        return row is not None

    def create_branch(self, repo_key: str, branch: str, head: str | None) -> None:
        with self._lock, self._conn:
            try:
                self._conn.execute(
                    "INSERT INTO branch_heads (repo_key, branch, head) VALUES (?,?,?)",
                    (repo_key, branch, head),
                )
            except sqlite3.IntegrityError:
                raise BranchExistsError(branch) from None

    def delete_branch(self, repo_key: str, branch: str) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM branch_heads WHERE repo_key = ? AND branch = ?",
                (repo_key, branch),
            )
        return cur.rowcount > 0

    def get_commit(self, repo_key: str, commit_id: str) -> Commit | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT commit_id, parent, author, branch, message, timestamp, files "
                "FROM commits WHERE repo_key = ? AND commit_id = ?",
                (repo_key, commit_id),
            ).fetchone()
        if row is None:
            return None
        return Commit(
            id=row[0], parent=row[1], author=row[2], branch=row[3],
            message=row[4], timestamp=row[5], files=json.loads(row[6]),
        )

    def get_blobs(self, repo_key: str, digests: Iterable[str]) -> dict[str, bytes]:
        wanted = list(dict.fromkeys(digests))
        found: dict[str, bytes] = {}
        with self._lock:
            for start in range(0, len(wanted), 500):
                chunk = wanted[start:start + 500]
                marks = ",".join("?" * len(chunk))
                rows = self._conn.execute(
                    f"SELECT hash, content FROM blobs WHERE repo_key = ? AND hash IN ({marks})",
                    (repo_key, *chunk),
                ).fetchall()
                found.update({h: bytes(c) for h, c in rows})
        return found

    def existing_blobs(self, repo_key: str, digests: Iterable[str]) -> set[str]:
        wanted = list(dict.fromkeys(digests))
        present: set[str] = set()
        with self._lock:
            for start in range(0, len(wanted), 500):
                chunk = wanted[start:start + 500]
                marks = ",".join("?" * len(chunk))
                rows = self._conn.execute(
                    f"SELECT hash FROM blobs WHERE repo_key = ? AND hash IN ({marks})",
                    (repo_key, *chunk),
                ).fetchall()
                present.update(r[0] for r in rows)
        return present

    def apply_push(
        self,
        repo_key: str,
        branch: str,
        expected_head: str | None,
        commit: Commit,
        blobs: dict[str, bytes],
    ) -> None:
        """Store blobs and *commit*, then move *branch* from *expected_head*.

        ``BEGIN IMMEDIATE`` takes the database write lock before the head is
        compared, and the branch moves with a compare-and-swap statement, so
        the check holds when several stores share one database file.  A
        stale *expected_head* raises :class:`PushConflictError` and nothing
        is written.
        """
        with self._lock, self._conn:
            self._conn.execute("BEGIN IMMEDIATE")
            if not self._move_head(repo_key, branch, expected_head, commit.id):
                raise PushConflictError(branch, expected_head, self._branch_head(repo_key, branch))
            self._conn.executemany(
                "INSERT OR IGNORE INTO blobs (repo_key, hash, content) VALUES (?,?,?)",
                [(repo_key, h, sqlite3.Binary(data)) for h, data in blobs.items()],
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO commits (repo_key, commit_id, parent, branch, "
                "author, message, timestamp, files) VALUES (?,?,?,?,?,?,?,?)",
                (repo_key, commit.id, commit.parent, commit.branch, commit.author,
                 commit.message, commit.timestamp,
                 json.dumps(dict(commit.files), sort_keys=True)),
            )
        logger.debug("Applied push %s/%s -> %s", repo_key, branch, commit.id)

    def _move_head(self, repo_key: str, branch: str, expected: str | None, new_head: str) -> bool:
        """Compare-and-swap the branch head; False when *expected* is stale."""
        if expected is None:
            cur = self._conn.execute(
                "INSERT INTO branch_heads (repo_key, branch, head) VALUES (?,?,?) "
                "ON CONFLICT (repo_key, branch) DO UPDATE SET head = excluded.head "
                "WHERE branch_heads.head IS NULL",
                (repo_key, branch, new_head),
            )
        else:
            cur = self._conn.execute(
                "UPDATE branch_heads SET head = ? WHERE repo_key = ? AND branch = ? AND head = ?",
                (new_head, repo_key, branch, expected),
            )
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def get_user_permission(self, repo_key: str, user_id: str) -> PermissionSet | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_PERM_COLUMNS} FROM repo_permissions "
                "WHERE repo_key = ? AND user_id = ?",
                (repo_key, user_id),
            ).fetchone()
        return PermissionSet.from_row(row) if row else None

    def list_user_permissions(self, repo_key: str) -> list[tuple[str, PermissionSet]]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT user_id, {_PERM_COLUMNS} FROM repo_permissions "
                "WHERE repo_key = ? ORDER BY user_id",
                (repo_key,),
            ).fetchall()
        return [(r[0], PermissionSet.from_row(r[1:])) for r in rows]

    def upsert_user_permission(self, repo_key: str, user_id: str, perms: PermissionSet) -> None:
        updates = ", ".join(f"{name} = excluded.{name}" for name in CAPABILITIES)
        marks = ",".join("?" * len(CAPABILITIES))
        with self._lock, self._conn:
            self._conn.execute(
                f"INSERT INTO repo_permissions (repo_key, user_id, {_PERM_COLUMNS}) "
                f"VALUES (?,?,{marks}) "
                f"ON CONFLICT (repo_key, user_id) DO UPDATE SET {updates}",
                (repo_key, user_id, *perms.as_row()),
            )

    def delete_user_permission(self, repo_key: str, user_id: str) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM repo_permissions WHERE repo_key = ? AND user_id = ?",
                (repo_key, user_id),
            )
        return cur.rowcount > 0

    def get_token_permission(self, token_id: str, repo_key: str) -> tuple[str, PermissionSet] | None:
        """Return ``(user_id, permissions)`` scoped to *token_id*, if any."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT user_id, {_PERM_COLUMNS} FROM token_permissions "
                "WHERE token_id = ? AND repo_key = ?",
                (token_id, repo_key),
            ).fetchone()
        return (row[0], PermissionSet.from_row(row[1:])) if row else None

    def upsert_token_permission(
        self, token_id: str, repo_key: str, user_id: str, perms: PermissionSet,
    ) -> None:
        updates = ", ".join(f"{name} = excluded.{name}" for name in CAPABILITIES)
        marks = ",".join("?" * len(CAPABILITIES))
        with self._lock, self._conn:
            self._conn.execute(
                f"INSERT INTO token_permissions (token_id, repo_key, user_id, {_PERM_COLUMNS}) "
                f"VALUES (?,?,?,{marks}) "
                f"ON CONFLICT (token_id, repo_key) DO UPDATE SET user_id = excluded.user_id, {updates}",
                (token_id, repo_key, user_id, *perms.as_row()),
            )

    def token_owner(self, token_id: str) -> str | None:
        """User id recorded for *token_id* on any repository."""
        with self._lock:
            row = self._conn.execute(
                "SELECT user_id FROM token_permissions WHERE token_id = ? LIMIT 1",
                (token_id,),
            ).fetchone()
        return row[0] if row else None

    def list_token_permissions(self, token_id: str) -> list[tuple[str, PermissionSet]]:
        """``(repo_key, permissions)`` for every repository *token_id* is scoped to."""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT repo_key, {_PERM_COLUMNS} FROM token_permissions "
                "WHERE token_id = ? ORDER BY repo_key",
                (token_id,),
            ).fetchall()
        return [(r[0], PermissionSet.from_row(r[1:])) for r in rows]

    def delete_token_permission(self, token_id: str, repo_key: str) -> bool:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "DELETE FROM token_permissions WHERE token_id = ? AND repo_key = ?",
                (token_id, repo_key),
            )
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Releases
    # ------------------------------------------------------------------

    def insert_release(self, repo_key: str, release: ReleaseResponse) -> ReleaseResponse:
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO releases (repo_key, version, version_type, message, "
                "snapshot_commit_id, created_by, created_at, tasks) VALUES (?,?,?,?,?,?,?,?)",
                (repo_key, release.version,
                 release.version_type.value if release.version_type else None,
                 release.message, release.snapshot_commit_id, release.created_by,
                 release.created_at,
                 json.dumps([t.to_wire() for t in release.tasks])),
            )
        return release.model_copy(update={"id": cur.lastrowid})

    def release_exists(self, repo_key: str, version: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM releases WHERE repo_key = ? AND version = ?",
                (repo_key, version),
            ).fetchone()
        return row is not None

    def list_releases(self, repo_key: str) -> list[ReleaseResponse]:
        """Releases newest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, version, version_type, message, snapshot_commit_id, "
                "created_by, created_at, tasks FROM releases "
                "WHERE repo_key = ? ORDER BY id DESC",
                (repo_key,),
            ).fetchall()
        return [
            ReleaseResponse(
                id=r[0], version=r[1], version_type=r[2], message=r[3],
                snapshot_commit_id=r[4], created_by=r[5], created_at=r[6],
                tasks=[ReleaseTask.from_wire(t) for t in json.loads(r[7])],
            )
            for r in rows
        ]
