"""ObjectStore — content-addressed blob storage under ``.vcs/objects``.

A blob with digest ``abcdef...`` lives at ``objects/ab/cdef...``.  Objects
are immutable: writing content that is already present is a no-op.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

from chronovcs.errors import BlobNotFoundError, CorruptionError, ValidationError
from chronovcs.security.hasher import Hasher
from chronovcs.vcs.fileio import atomic_write_bytes

logger = logging.getLogger(__name__)


class ObjectStore:
    """Blob store rooted at *objects_dir*.

    Parameters
    ----------
    objects_dir:
        The ``.vcs/objects`` directory of a repository.
    """

    def __init__(self, objects_dir: str | Path) -> None:
        self.objects_dir = Path(objects_dir)

    def _path_for(self, digest: str) -> Path:
        if not Hasher.is_digest(digest):
            raise ValidationError(f"Invalid object id: {digest!r}")
        return self.objects_dir / digest[:2] / digest[2:]

    # -- Writing --------------------------------------------------------------

    def write_blob(self, path: str | Path) -> str:
        """Store the file at *path* and return its digest."""
        data = Path(path).read_bytes()
        return self.write_bytes(data)

    def write_bytes(self, data: bytes, expected_digest: str | None = None) -> str:
        """Store *data* and return its digest.

        When *expected_digest* is given the content must hash to it;
        otherwise :class:`CorruptionError` is raised and nothing is written.
        """
        digest = Hasher.hash_bytes(data)
        if expected_digest is not None and digest != expected_digest:
            raise CorruptionError(
                f"Object content hashes to {digest}", digest=expected_digest,
            )

        target = self._path_for(digest)
        if target.exists():
            logger.debug("Object %s already stored", digest)
            return digest

        atomic_write_bytes(target, data)
        logger.debug("Stored object %s (%d bytes)", digest, len(data))
        return digest

    # -- Reading --------------------------------------------------------------

    def read_blob(self, digest: str) -> bytes:
        """Return the content stored under *digest*."""
        target = self._path_for(digest)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            raise BlobNotFoundError(digest) from None

    def exists(self, digest: str) -> bool:
        try:
            return self._path_for(digest).is_file()
        except ValidationError:
            return False

    def iter_digests(self) -> Iterator[str]:
        """Yield every stored digest in sorted order."""
        if not self.objects_dir.is_dir():
            return
        for prefix in sorted(self.objects_dir.iterdir()):
            if not prefix.is_dir() or len(prefix.name) != 2:
                continue
            for obj in sorted(prefix.iterdir()):
                digest = prefix.name + obj.name
                if Hasher.is_digest(digest):
                    yield digest
