"""AuditLogger — append-only, hash-chained record of server-side mutations.

Each accepted push, release, and permission change is written as one
row whose ``entry_hash`` covers the row's fields plus the previous row's
hash, so any later edit breaks :meth:`AuditLogger.verify_chain`.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from chronovcs.security.hasher import Hasher

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS audit_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp       TEXT    NOT NULL,
    actor           TEXT    NOT NULL,
    action          TEXT    NOT NULL,
    repo_key        TEXT    NOT NULL DEFAULT '',
    resource        TEXT    NOT NULL DEFAULT '',
    before_id       TEXT    NOT NULL DEFAULT '',
    after_id        TEXT    NOT NULL DEFAULT '',
    entry_hash      TEXT    NOT NULL,
    prev_entry_hash TEXT    NOT NULL DEFAULT ''
);
"""

_COLUMNS = (
    "id, timestamp, actor, action, repo_key, resource, "
    "before_id, after_id, entry_hash, prev_entry_hash"
)


class AuditEntry(BaseModel):
    """Single immutable audit record.

    ``before_id``/``after_id`` hold the branch head (or release
    version) before and after the mutation.
    """

    id: int = 0
    timestamp: str = ""
    actor: str = ""
    action: str = ""
    repo_key: str = ""
    resource: str = ""
    before_id: str = ""
    after_id: str = ""
    entry_hash: str = ""
    prev_entry_hash: str = ""


def _entry_hash(ts: str, actor: str, action: str, repo_key: str,
                resource: str, before: str, after: str, prev: str) -> str:
    return Hasher.hash_string(
        "\x1f".join((ts, actor, action, repo_key, resource, before, after, prev))
    )


class AuditLogger:
    """Append-only audit log stored in SQLite.

    Parameters
    ----------
    db_path:
        Path to the SQLite file.  Defaults to ``':memory:'``.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def log(
        self,
        actor: str,
        action: str,
        repo_key: str = "",
        resource: str = "",
        before_id: str | None = None,
        after_id: str | None = None,
    ) -> AuditEntry:
        """Append an event and return the created :class:`AuditEntry`."""
        ts = datetime.now(timezone.utc).isoformat()
        before = before_id or ""
        after = after_id or ""

        with self._lock:
            prev = self._last_hash()
            entry_hash = _entry_hash(ts, actor, action, repo_key, resource, before, after, prev)
            cur = self._conn.execute(
                "INSERT INTO audit_log "
                "(timestamp, actor, action, repo_key, resource, before_id, "
                "after_id, entry_hash, prev_entry_hash) VALUES (?,?,?,?,?,?,?,?,?)",
                (ts, actor, action, repo_key, resource, before, after, entry_hash, prev),
            )
            self._conn.commit()

        logger.debug("audit %s %s %s/%s", actor, action, repo_key, resource)
        return AuditEntry(
            id=cur.lastrowid or 0,
            timestamp=ts,
            actor=actor,
            action=action,
            repo_key=repo_key,
            resource=resource,
            before_id=before,
            after_id=after,
            entry_hash=entry_hash,
            prev_entry_hash=prev,
        )

    def verify_chain(self) -> bool:
        """Validate the entire hash chain.  Returns False if tampered."""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM audit_log ORDER BY id"
            ).fetchall()

        prev_hash = ""
        for row in rows:
            (_id, ts, actor, action, repo_key, resource,
             before, after, stored_hash, stored_prev) = row
            if stored_prev != prev_hash:
                return False
            expected = _entry_hash(ts, actor, action, repo_key, resource, before, after, prev_hash)
            if expected != stored_hash:
                return False
            prev_hash = stored_hash

        return True

    def get_log(
        self,
        repo_key: str | None = None,
        actor: str | None = None,
        action: str | None = None,
        since: str | None = None,
    ) -> list[AuditEntry]:
        """Query the audit log with optional filters."""
        clauses: list[str] = []
        params: list[Any] = []
        if repo_key is not None:
            clauses.append("repo_key = ?")
            params.append(repo_key)
        if actor is not None:
            clauses.append("actor = ?")
            params.append(actor)
        if action is not None:
            clauses.append("action = ?")
            params.append(action)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM audit_log{where} ORDER BY id", params,
            ).fetchall()
        return [
            AuditEntry(
                id=r[0], timestamp=r[1], actor=r[2], action=r[3],
                repo_key=r[4], resource=r[5], before_id=r[6],
                after_id=r[7], entry_hash=r[8], prev_entry_hash=r[9],
            )
            for r in rows
        ]

    def export_log(self) -> str:
        """Export the full audit trail as JSON."""
        return json.dumps([e.model_dump() for e in self.get_log()], indent=2)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _last_hash(self) -> str:
        row = self._conn.execute(
            "SELECT entry_hash FROM audit_log ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return row[0] if row else ""

    def close(self) -> None:
        self._conn.close()
