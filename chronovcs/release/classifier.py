"""Map commits and tasks to version bump types.

Commit messages are read as conventional commits:

* ``type!: ...`` or a ``BREAKING CHANGE`` anywhere in the message -> MAJOR
* ``feat: ...`` / ``feat(scope): ...`` -> MINOR
* anything else -> PATCH
"""

from __future__ import annotations

import re
from typing import Iterable

from chronovcs.release.semver import VersionType

_HEADER_RE = re.compile(r"^(?P<type>[A-Za-z]+)(?:\([^)]*\))?(?P<bang>!)?:")


def classify_message(message: str) -> VersionType:
    text = message or ""
    if "BREAKING CHANGE" in text or "BREAKING-CHANGE" in text:
        return VersionType.MAJOR
    header = text.strip().splitlines()[0] if text.strip() else ""
    match = _HEADER_RE.match(header)
    if match is None:
        return VersionType.PATCH
    if match.group("bang"):
        return VersionType.MAJOR
    if match.group("type").lower() == "feat":
        return VersionType.MINOR
    return VersionType.PATCH


def build_breakdown(
    messages: Iterable[str],
    task_types: Iterable[VersionType | str] = (),
) -> dict[str, int]:
    """Count bump types over commit *messages* and explicit *task_types*."""
    breakdown = {t.value: 0 for t in VersionType}
    for message in messages:
        breakdown[classify_message(message).value] += 1
    for task_type in task_types:
        breakdown[VersionType.coerce(task_type).value] += 1
    return breakdown


def pick_version_type(breakdown: dict[str, int]) -> tuple[VersionType, str]:
    """Return the highest non-empty bucket and a human-readable reason."""
    if breakdown.get("MAJOR", 0) > 0:
        return VersionType.MAJOR, f"{breakdown['MAJOR']} breaking change(s) detected"
    if breakdown.get("MINOR", 0) > 0:
        return VersionType.MINOR, f"{breakdown['MINOR']} new feature(s) added"
    return VersionType.PATCH, f"{breakdown.get('PATCH', 0)} bug fix(es)"
