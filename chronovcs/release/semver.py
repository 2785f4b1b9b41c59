"""Semantic version parsing, bumping, and lenient comparison."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from chronovcs.errors import ValidationError

_STRICT_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
_NON_DIGIT_RE = re.compile(r"\D")


class VersionType(str, Enum):
    MAJOR = "MAJOR"
    MINOR = "MINOR"
    PATCH = "PATCH"

    @classmethod
    def coerce(cls, value: VersionType | str) -> VersionType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(f"Invalid version type: {value!r}") from None


@dataclass(frozen=True, order=True)
class SemanticVersion:
    major: int = 0
    minor: int = 0
    patch: int = 0

    @classmethod
    def parse(cls, text: str | None) -> SemanticVersion:
        """Strictly parse ``MAJOR.MINOR.PATCH``; blank input is ``0.0.0``."""
        if text is None or not text.strip():
            return cls()
        match = _STRICT_RE.match(text.strip())
        if match is None:
            raise ValidationError(f"Invalid semantic version format: {text!r}")
        return cls(*(int(part) for part in match.groups()))

    def bump(self, version_type: VersionType | str) -> SemanticVersion:
        kind = VersionType.coerce(version_type)
        if kind is VersionType.MAJOR:
            return SemanticVersion(self.major + 1, 0, 0)
        if kind is VersionType.MINOR:
            return SemanticVersion(self.major, self.minor + 1, 0)
        return SemanticVersion(self.major, self.minor, self.patch + 1)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def _components(version: str | None) -> list[int]:
    if version is None or not version.strip():
        return [0, 0, 0]
    core = re.split(r"[-+]", version.strip(), maxsplit=1)[0]
    parts: list[int] = []
    for piece in core.split("."):
        digits = _NON_DIGIT_RE.sub("", piece)
        parts.append(int(digits) if digits else 0)
    return parts


def compare(a: str | None, b: str | None) -> int:
    """Compare two version strings leniently; returns -1, 0, or 1.

    Pre-release and build suffixes are dropped, non-digits inside a
    component are ignored, and the shorter side is padded with zeros.
    Never raises.
    """
    left, right = _components(a), _components(b)
    width = max(len(left), len(right))
    left += [0] * (width - len(left))
    right += [0] * (width - len(right))
    for x, y in zip(left, right):
        if x != y:
            return -1 if x < y else 1
    return 0
