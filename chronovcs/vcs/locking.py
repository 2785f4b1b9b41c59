"""Per-repository write serialization within one process.

Mutations of a single repository root (index save, ref and HEAD writes,
commit creation, checkout, release state) run under the same re-entrant
lock.  Different roots never contend.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)


class RepoLockRegistry:
    """Hand out one :class:`threading.RLock` per resolved repository root."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Path, threading.RLock] = {}

    def get(self, root: str | Path) -> threading.RLock:
        key = Path(root).resolve()
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, root: str | Path) -> Iterator[None]:
        lock = self.get(root)
        with lock:
            yield


_registry = RepoLockRegistry()


def repo_lock(root: str | Path):
    """Context manager serialising writers of the repository at *root*."""
    return _registry.hold(root)
