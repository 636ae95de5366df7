"""Ignore patterns for library synchronization.

This module provides:
- IgnorePatterns: gitignore-style matching for library paths
- DEFAULT_IGNORE_PATTERNS: OS, editor and engine files never synced

Supported pattern syntax, a subset of .gitignore:
- ``name`` or ``*.ext`` matches a file or directory at any depth
- ``dir/`` matches directories only (and therefore their contents)
- ``a/b`` or ``/a`` is anchored to the library root
- ``!pattern`` re-includes paths excluded by an earlier pattern

The last matching pattern decides.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from pathlib import Path

from librarysync.client.api import TEMP_PREFIX, TEMP_SUFFIX

DEFAULT_IGNORE_PATTERNS = [
    ".git/",
    ".DS_Store",
    "Thumbs.db",
    "*.tmp",
    "*.temp",
    "~*",
    "*.swp",
    "*.swo",
    ".syncignore",
    ".librarysync/",
    f"{TEMP_PREFIX}*{TEMP_SUFFIX}",
]

SYNCIGNORE_FILE = ".syncignore"


@dataclass(frozen=True)
class _Rule:
    glob: str
    negated: bool = False
    directory_only: bool = False
    anchored: bool = False

    @classmethod
    def parse(cls, pattern: str) -> _Rule:
        negated = pattern.startswith("!")
        if negated:
            pattern = pattern[1:]
        directory_only = pattern.endswith("/")
        pattern = pattern.rstrip("/")
        anchored = "/" in pattern
        return cls(pattern.lstrip("/"), negated, directory_only, anchored)

    def applies_to(self, parts: list[str], is_dir: bool) -> bool:
        # Every proper prefix of the path is a directory
        candidates = [(index, True) for index in range(1, len(parts))]
        candidates.append((len(parts), is_dir))
        for length, candidate_is_dir in candidates:
            if self.directory_only and not candidate_is_dir:
                continue
            if self.anchored:
                subject = "/".join(parts[:length])
            else:
                subject = parts[length - 1]
            if fnmatch.fnmatchcase(subject, self.glob):
                return True
        return False


class IgnorePatterns:
    """Decides which library paths are left out of synchronization."""

    def __init__(self, patterns: list[str] | None = None) -> None:
        """Initialize with the defaults plus extra patterns.

        Args:
            patterns: Extra gitignore-style patterns, applied after the defaults.
        """
        self._rules = [_Rule.parse(p) for p in DEFAULT_IGNORE_PATTERNS]
        for pattern in patterns or []:
            self.add_pattern(pattern)

    @classmethod
    def for_root(cls, root: Path, patterns: list[str] | None = None) -> IgnorePatterns:
        """Build the matcher for a library root, including its .syncignore."""
        ignore = cls(patterns)
        ignore.load_from_file(root / SYNCIGNORE_FILE)
        return ignore

    def add_pattern(self, pattern: str) -> None:
        """Append a pattern; blank lines and comments are skipped."""
        pattern = pattern.strip()
        if pattern and not pattern.startswith("#"):
            self._rules.append(_Rule.parse(pattern))

    def load_from_file(self, path: Path) -> None:
        """Append the patterns of a .syncignore file, if it exists."""
        if not path.is_file():
            return
        for line in path.read_text(encoding="utf-8").splitlines():
            self.add_pattern(line)

    def matches(self, rel_str: str, is_dir: bool = False) -> bool:
        """Check a POSIX path relative to the library root."""
        parts = [part for part in rel_str.split("/") if part]
        if not parts:
            return False
        ignored = False
        for rule in self._rules:
            if rule.negated == ignored and rule.applies_to(parts, is_dir):
                ignored = not rule.negated
        return ignored

    def should_ignore(self, path: Path, base_path: Path) -> bool:
        """Check an absolute path below the library root.

        Symlinks are always ignored since they are never followed. Paths
        outside base_path are not ignored.
        """
        if path.is_symlink():
            return True
        try:
            rel_path = path.relative_to(base_path)
        except ValueError:
            return False
        return self.matches(rel_path.as_posix(), is_dir=path.is_dir())
