"""Local library scanning.

This module provides:
- LocalFile: A local file with stat metadata and a lazily computed hash
- scan_library: Walk the library root into a path -> LocalFile mapping
- resolve_local_path: Map a library path to a location inside the root

Hashes are computed only when first requested, so the reconciler pays for
hashing only on paths that exist on both sides.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from librarysync.client.sync.ignore import IgnorePatterns
from librarysync.client.sync.types import UnsafePathError
from librarysync.core.hashing import compute_file_hash
from librarysync.core.types import FileRecord, utc_from_mtime

logger = logging.getLogger(__name__)


@dataclass
class LocalFile:
    """A file inside the library root."""

    path: Path
    relative_path: str
    size: int
    mtime: float
    _hash: str | None = field(default=None, repr=False, compare=False)
    _hash_lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    @classmethod
    def from_path(cls, file_path: Path, base_path: Path) -> LocalFile:
        """Create a LocalFile from an absolute path.

        Raises:
            OSError: If the file cannot be stat'ed.
        """
        stat = file_path.stat()
        return cls(
            path=file_path,
            relative_path=file_path.relative_to(base_path).as_posix(),
            size=stat.st_size,
            mtime=stat.st_mtime,
        )

    @property
    def modified_time(self) -> datetime:
        """Modification time as aware UTC datetime."""
        return utc_from_mtime(self.mtime)

    @property
    def content_hash(self) -> str:
        """SHA-256 of the content, computed on first access.

        Raises:
            OSError: If the file cannot be read.
        """
        with self._hash_lock:
            if self._hash is None:
                self._hash = compute_file_hash(self.path)
            return self._hash

    def to_record(self) -> FileRecord:
        """Describe this file as a FileRecord (hashes the content)."""
        return FileRecord(
            relative_path=self.relative_path,
            size=self.size,
            modified_time=self.modified_time,
            content_hash=self.content_hash,
        )


def scan_library(base_path: Path, ignore: IgnorePatterns | None = None) -> dict[str, LocalFile]:
    """Scan the library root for regular files.

    Symlinks and ignored paths are skipped; files that vanish or cannot be
    stat'ed during the walk are logged and skipped.

    Args:
        base_path: Library root.
        ignore: Ignore patterns (defaults plus the root's .syncignore).

    Returns:
        Mapping of relative path to LocalFile.
    """
    if ignore is None:
        ignore = IgnorePatterns.for_root(base_path)

    found: dict[str, LocalFile] = {}
    for root_str, dirs, files in os.walk(base_path):
        root = Path(root_str)

        # Prune ignored directories (including symlinks)
        dirs[:] = [d for d in dirs if not ignore.should_ignore(root / d, base_path)]

        for filename in files:
            file_path = root / filename
            if ignore.should_ignore(file_path, base_path):
                continue
            try:
                local_file = LocalFile.from_path(file_path, base_path)
            except OSError as e:
                logger.warning("Skipping unreadable file %s: %s", file_path, e)
                continue
            found[local_file.relative_path] = local_file

    logger.debug("Scanned %d local files under %s", len(found), base_path)
    return found


def resolve_local_path(base_path: Path, relative_path: str) -> Path:
    """Map a library path to its location under base_path.

    Symlinks along the way are resolved, so a linked directory pointing
    elsewhere cannot be used to write or delete outside the root.

    Raises:
        UnsafePathError: If the target resolves outside base_path.
    """
    local_path = base_path / relative_path
    target = local_path.resolve()
    if not target.is_relative_to(base_path.resolve()):
        raise UnsafePathError(relative_path, str(target))
    return local_path
