"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError, ConflictUnresolvedError: Exception classes
- SyncEventType, SyncEventSource, SyncEvent: Event queue types
- ActionType, SyncAction: Reconciliation plan entries
- ConflictResolution, ConflictInfo, ConflictOutcome: Conflict types
- SyncResult, SyncErrorReport: Outcome of a reconciliation pass
- Type aliases for callbacks
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum, auto
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from librarysync.client.sync.scanner import LocalFile
    from librarysync.core.types import FileRecord


class SyncError(Exception):
    """Base exception for sync errors."""


class ConflictUnresolvedError(SyncError):
    """No conflict decision was obtained; the file stays out of sync."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Conflict on {path} unresolved: {reason}")


class UnsafePathError(SyncError):
    """A library path would resolve outside the library root."""

    def __init__(self, path: str, target: str) -> None:
        self.path = path
        super().__init__(f"Refusing to touch {path}: {target} is outside the library root")


# =============================================================================
# Event Queue Types
# =============================================================================


class SyncEventType(IntEnum):
    """Types of sync events.

    Values are ordered by priority (lower = higher priority).
    """

    # Full reconciliation supersedes everything else
    RESYNC_REQUESTED = 0

    # High priority - avoid useless transfers
    LOCAL_DELETED = 10
    REMOTE_DELETED = 11

    # Medium priority - local changes
    LOCAL_CREATED = 20
    LOCAL_MODIFIED = 21

    # Lower priority - remote changes
    REMOTE_CREATED = 30
    REMOTE_MODIFIED = 31


class SyncEventSource(IntEnum):
    """Source of sync events."""

    LOCAL = auto()  # From file watcher
    REMOTE = auto()  # From realtime channel
    INTERNAL = auto()  # From coordinator


RESYNC_PATH = ""


@dataclass(order=True)
class SyncEvent:
    """A sync event to be processed by the coordinator.

    Events are ordered by (priority, timestamp) for queue processing.

    Attributes:
        event_type: The type of sync event
        path: Relative path of the file (from library root)
        source: Where the event originated
        timestamp: Unix timestamp when event was created
        priority: Computed priority for queue ordering (lower = higher priority)
        record: Remote metadata carried by REMOTE events
        metadata: Optional additional data (e.g., mtime, size)
    """

    priority: int = field(compare=True)
    timestamp: float = field(compare=True)

    event_type: SyncEventType = field(compare=False)
    path: str = field(compare=False)
    source: SyncEventSource = field(compare=False)
    record: FileRecord | None = field(default=None, compare=False)
    metadata: dict[str, str | int | float] = field(default_factory=dict, compare=False)

    @classmethod
    def create(
        cls,
        event_type: SyncEventType,
        path: str,
        source: SyncEventSource,
        record: FileRecord | None = None,
        metadata: dict[str, str | int | float] | None = None,
    ) -> SyncEvent:
        """Create a new SyncEvent stamped with the current time."""
        return cls(
            priority=int(event_type),
            timestamp=time.time(),
            event_type=event_type,
            path=path,
            source=source,
            record=record,
            metadata=metadata or {},
        )

    @classmethod
    def resync(cls, reason: str) -> SyncEvent:
        """Create a request for a full reconciliation pass."""
        return cls.create(
            SyncEventType.RESYNC_REQUESTED,
            RESYNC_PATH,
            SyncEventSource.INTERNAL,
            metadata={"reason": reason},
        )

    def __repr__(self) -> str:
        """Human-readable representation."""
        return (
            f"SyncEvent({self.event_type.name}, "
            f"path={self.path!r}, "
            f"source={self.source.name})"
        )


# =============================================================================
# Reconciliation Types
# =============================================================================


class ActionType(Enum):
    """Corrective action for one path."""

    NONE = auto()
    UPLOAD = auto()
    DOWNLOAD = auto()
    CREATE_DIRECTORY = auto()
    CONFLICT = auto()
    INVALID = auto()


@dataclass
class SyncAction:
    """One entry of a reconciliation plan."""

    path: str
    action: ActionType
    local: LocalFile | None = None
    remote: FileRecord | None = None
    reason: str = ""


class ConflictResolution(Enum):
    """Decision for a conflicting file."""

    KEEP_LOCAL = "keep-local"
    KEEP_REMOTE = "keep-remote"
    KEEP_BOTH = "keep-both"


@dataclass(frozen=True)
class ConflictInfo:
    """Information presented to a conflict decision-maker.

    Attributes:
        relative_path: Path of the conflicting file
        local_modified: Local modification time (UTC)
        remote_modified: Remote modification time (UTC)
        local_size: Local size in bytes
        remote_size: Remote size in bytes
        local_hash: Hash of the local content
        remote_hash: Hash of the remote content
    """

    relative_path: str
    local_modified: datetime | None
    remote_modified: datetime | None
    local_size: int
    remote_size: int
    local_hash: str | None = None
    remote_hash: str | None = None


@dataclass
class ConflictOutcome:
    """What the resolver did for one conflict."""

    path: str
    resolution: ConflictResolution
    conflict_copy: Path | None = None


@dataclass
class SyncErrorReport:
    """A per-file or per-pass failure surfaced to the caller."""

    operation: str
    error: str
    path: str | None = None

    def __str__(self) -> str:
        target = f" {self.path}" if self.path else ""
        return f"{self.operation}{target}: {self.error}"


@dataclass
class SyncResult:
    """Result of a reconciliation pass."""

    uploaded: list[str] = field(default_factory=list)
    downloaded: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    created_dirs: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    errors: list[SyncErrorReport] = field(default_factory=list)
    cancelled: bool = False

    @property
    def has_conflicts(self) -> bool:
        """Check if there are any conflicts."""
        return len(self.conflicts) > 0

    @property
    def has_errors(self) -> bool:
        """Check if any file failed."""
        return len(self.errors) > 0

    @property
    def transfers(self) -> int:
        """Number of network transfers performed."""
        return len(self.uploaded) + len(self.downloaded) + len(self.deleted)


# Type aliases for callbacks
ErrorCallback = Callable[[SyncErrorReport], None]
