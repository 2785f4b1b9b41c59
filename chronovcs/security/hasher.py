"""Content hashing utilities using stdlib hashlib (SHA-256)."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

_CHUNK_SIZE = 65536
_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


class Hasher:
    """SHA-256 hashing for byte strings, text, and files.

    Digests are always 64 lowercase hex characters; identical content
    yields an identical digest regardless of where it came from.
    """

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        """Return the SHA-256 hex digest of *data*."""
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def hash_string(text: str) -> str:
        """Return the SHA-256 hex digest of *text* encoded as UTF-8."""
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    @staticmethod
    def hash_file(path: str | Path) -> str:
        """Return the SHA-256 hex digest of the file at *path*.

        The file is streamed in chunks.  Read errors propagate as
        :class:`OSError`.
        """
        h = hashlib.sha256()
        p = Path(path)
        with p.open("rb") as f:
            while True:
                chunk = f.read(_CHUNK_SIZE)
                if not chunk:
                    break
                h.update(chunk)
        return h.hexdigest()

    @staticmethod
    def is_digest(value: str | None) -> bool:
        """Return *True* if *value* looks like a digest produced by this class."""
        return bool(value) and _DIGEST_RE.match(value) is not None
