"""IgnoreEngine — ``.chronoignore`` pattern matching.

Patterns are classified once when the file is read:

* ``name/`` or a bare ``name`` (no ``*``, no ``.``) or a hidden ``.name``
  is a **directory** rule and matches the path itself or anything below it.
* a pattern containing ``*`` is a **wildcard** rule matched against the
  whole relative path, ``*`` spanning any characters including ``/``.
* anything else is an **exact** rule compared literally.

Directory rules are consulted first, then wildcard rules, then exact
rules; the first hit wins.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from chronovcs.config import IGNORE_FILE, VCS_DIR

logger = logging.getLogger(__name__)


class RuleKind(str, Enum):
    DIRECTORY = "directory"
    WILDCARD = "wildcard"
    EXACT = "exact"


@dataclass(frozen=True)
class IgnoreRule:
    """One non-comment line of ``.chronoignore``."""

    pattern: str
    kind: RuleKind
    _regex: re.Pattern[str] | None = field(default=None, compare=False, repr=False)

    @property
    def is_directory_rule(self) -> bool:
        return self.kind is RuleKind.DIRECTORY

    @classmethod
    def parse(cls, line: str) -> IgnoreRule | None:
        """Build a rule from a raw line, or return None for blanks and comments."""
        text = line.strip()
        if not text or text.startswith("#"):
            return None

        if text.endswith("/"):
            name = text.rstrip("/")
            return cls(name, RuleKind.DIRECTORY) if name else None
        if "*" in text:
            regex = re.compile(re.escape(text).replace(r"\*", ".*"))
            return cls(text, RuleKind.WILDCARD, regex)
        if "." not in text:
            return cls(text, RuleKind.DIRECTORY)
        if text.startswith(".") and text.count(".") == 1:
            return cls(text, RuleKind.DIRECTORY)
        return cls(text, RuleKind.EXACT)

    def matches(self, rel_path: str) -> bool:
        if self.kind is RuleKind.DIRECTORY:
            return rel_path == self.pattern or rel_path.startswith(self.pattern + "/")
        if self.kind is RuleKind.WILDCARD:
            return self._regex is not None and self._regex.fullmatch(rel_path) is not None
        return rel_path == self.pattern


def parse_rules(text: str) -> list[IgnoreRule]:
    """Parse ignore-file content, grouped directory -> wildcard -> exact."""
    rules = [r for r in (IgnoreRule.parse(line) for line in text.splitlines()) if r]
    order = {RuleKind.DIRECTORY: 0, RuleKind.WILDCARD: 1, RuleKind.EXACT: 2}
    return sorted(rules, key=lambda r: order[r.kind])


class IgnoreRuleCache:
    """Parsed rules keyed by repository root.

    Rules are read on first use and kept until :meth:`invalidate` is
    called, typically after ``.chronoignore`` has been edited.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rules: dict[Path, list[IgnoreRule]] = {}

    def get(self, repo_root: Path) -> list[IgnoreRule]:
        with self._lock:
            rules = self._rules.get(repo_root)
            if rules is None:
                rules = self._load(repo_root)
                self._rules[repo_root] = rules
            return rules

    def invalidate(self, repo_root: str | Path | None = None) -> None:
        """Drop cached rules for *repo_root*, or for every root when None."""
        with self._lock:
            if repo_root is None:
                self._rules.clear()
            else:
                self._rules.pop(Path(repo_root).resolve(), None)

    @staticmethod
    def _load(repo_root: Path) -> list[IgnoreRule]:
        ignore_file = repo_root / IGNORE_FILE
        try:
            text = ignore_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError):
            logger.warning("Could not read %s; no ignore rules applied", ignore_file)
            return []
        rules = parse_rules(text)
        logger.debug("Loaded %d ignore rules from %s", len(rules), ignore_file)
        return rules


class IgnoreEngine:
    """Decide whether paths of a working tree are excluded from tracking."""

    def __init__(self, cache: IgnoreRuleCache | None = None) -> None:
        self.cache = cache or IgnoreRuleCache()

    def is_ignored(self, repo_root: str | Path, candidate_path: str | Path) -> bool:
        """Return *True* if *candidate_path* is excluded under *repo_root*.

        *candidate_path* may be absolute or relative to the root.  Paths
        outside the root are never reported as ignored.
        """
        root = Path(repo_root).resolve()
        rel = relative_posix(root, candidate_path)
        if rel is None or rel == "":
            return False

        if rel == VCS_DIR or rel.startswith(VCS_DIR + "/"):
            return True

        return any(rule.matches(rel) for rule in self.cache.get(root))

    def invalidate(self, repo_root: str | Path | None = None) -> None:
        self.cache.invalidate(repo_root)


def relative_posix(root: Path, candidate: str | Path) -> str | None:
    """Return *candidate* relative to *root* with forward slashes, or None if outside."""
    path = Path(candidate)
    if not path.is_absolute():
        path = root / path
    try:
        rel = path.resolve().relative_to(root)
    except ValueError:
        return None
    text = rel.as_posix()
    return "" if text == "." else text
