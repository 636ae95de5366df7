"""Shared types for librarysync.

This module defines the data model exchanged between the transfer client,
the realtime channel and the sync engine:
- FileRecord: metadata for one file or directory (local or remote)
- ChangeKind, ChangeEvent: a single create/update/delete notification
- SyncPhase, SyncState: coordinator state for one library root
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import PureWindowsPath
from typing import Any


def normalize_path(path: str) -> str:
    """Normalize a relative path to POSIX separators without a leading slash."""
    return path.replace("\\", "/").strip("/")


def validate_relative_path(path: str) -> str:
    """Normalize a path and check that it stays below the library root.

    Raises:
        ValueError: If the path is empty or contains a drive, a ``.`` or
            ``..`` segment, an empty segment or a NUL character.
    """
    normalized = normalize_path(path)
    if not normalized:
        raise ValueError("Empty relative path")
    if "\0" in normalized:
        raise ValueError(f"NUL character in path {normalized!r}")
    if PureWindowsPath(normalized).drive:
        raise ValueError(f"Path {normalized!r} names a drive")
    if any(part in ("", ".", "..") for part in normalized.split("/")):
        raise ValueError(f"Path {normalized!r} escapes or aliases the library root")
    return normalized


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp from the wire into an aware UTC datetime.

    Naive timestamps are assumed to already be UTC.
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    """Format an aware datetime as ISO-8601 UTC with a trailing Z."""
    if value is None:
        return None
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_from_mtime(mtime: float) -> datetime:
    """Convert a filesystem mtime to an aware UTC datetime."""
    return datetime.fromtimestamp(mtime, tz=UTC)


@dataclass(frozen=True)
class FileRecord:
    """Metadata for one file or directory within a library root.

    Attributes:
        relative_path: POSIX-style path relative to the library root.
        is_directory: Whether the record describes a directory.
        size: Size in bytes (0 for directories).
        modified_time: Last modification time (aware UTC).
        content_hash: Hex SHA-256 digest, None for directories.
    """

    relative_path: str
    is_directory: bool = False
    size: int = 0
    modified_time: datetime | None = None
    content_hash: str | None = None

    def __post_init__(self) -> None:
        """Normalize and validate fields."""
        path = validate_relative_path(self.relative_path)
        if self.size < 0:
            raise ValueError(f"Negative size for {path}: {self.size}")
        object.__setattr__(self, "relative_path", path)
        if self.content_hash is not None:
            object.__setattr__(self, "content_hash", self.content_hash.lower())

    @property
    def name(self) -> str:
        """Final path component."""
        return self.relative_path.rsplit("/", 1)[-1]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileRecord:
        """Create from a wire dictionary.

        Raises:
            ValueError: If required fields are missing or malformed.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Expected file object, got {type(data).__name__}")
        path = data.get("path")
        if not isinstance(path, str) or not path:
            raise ValueError(f"File record without path: {data!r}")
        try:
            size = int(data.get("size") or 0)
            modified_time = parse_timestamp(data.get("modTime"))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Malformed file record for {path}: {e}") from e
        is_directory = bool(data.get("isDirectory", False))
        content_hash = data.get("hash") or None
        return cls(
            relative_path=path,
            is_directory=is_directory,
            size=size,
            modified_time=modified_time,
            content_hash=None if is_directory else content_hash,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire dictionary."""
        return {
            "name": self.name,
            "path": self.relative_path,
            "size": self.size,
            "isDirectory": self.is_directory,
            "modTime": format_timestamp(self.modified_time),
            "hash": self.content_hash,
        }


class ChangeKind(str, Enum):
    """Kind of mutation carried by a ChangeEvent."""

    CREATED = "create"
    UPDATED = "update"
    DELETED = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """An immutable notification describing one mutation.

    For DELETED events only ``record.relative_path`` is meaningful.
    """

    kind: ChangeKind
    record: FileRecord

    @property
    def path(self) -> str:
        """Relative path affected by the change."""
        return self.record.relative_path

    @classmethod
    def deleted(cls, relative_path: str) -> ChangeEvent:
        """Build a DELETED event for a path."""
        return cls(ChangeKind.DELETED, FileRecord(relative_path))

    @classmethod
    def from_message(cls, message: str | bytes) -> ChangeEvent:
        """Decode a realtime channel message.

        Format: {"type": "create"|"update"|"delete", "file": {...}|null}

        Raises:
            ValueError: On malformed JSON, unknown type or missing path.
        """
        if isinstance(message, bytes):
            message = message.decode("utf-8")
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON message: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Message must be a JSON object")

        raw_type = str(data.get("type") or "").lower()
        try:
            kind = ChangeKind(raw_type)
        except ValueError:
            raise ValueError(f"Unknown change type: {data.get('type')!r}") from None

        file_data = data.get("file")
        if file_data is None:
            # Deletes may carry the path at the top level
            path = data.get("path") or data.get("relativePath")
            if kind is ChangeKind.DELETED and isinstance(path, str) and path:
                return cls.deleted(path)
            raise ValueError(f"{kind.value} message without file")

        return cls(kind, FileRecord.from_dict(file_data))

    def to_message(self) -> str:
        """Encode as a realtime channel message."""
        if self.kind is ChangeKind.DELETED:
            file_data: dict[str, Any] | None = {"path": self.path}
        else:
            file_data = self.record.to_dict()
        return json.dumps({"type": self.kind.value, "file": file_data})


class SyncPhase(str, Enum):
    """Synchronization phase of a library root."""

    OUT_OF_SYNC = "out_of_sync"
    SYNCHRONIZING = "synchronizing"
    SYNCHRONIZED = "synchronized"


@dataclass
class SyncState:
    """Process-wide sync state for one library root.

    Attributes:
        phase: Current phase.
        last_synced_at: Set only when entering SYNCHRONIZED.
        last_error: Most recent error message, for display.
    """

    phase: SyncPhase = SyncPhase.OUT_OF_SYNC
    last_synced_at: datetime | None = None
    last_error: str | None = field(default=None)
