"""Content hashing and the server-side audit trail."""

from chronovcs.security.audit import AuditEntry, AuditLogger
from chronovcs.security.hasher import Hasher

__all__ = [
    "AuditEntry",
    "AuditLogger",
    "Hasher",
]
