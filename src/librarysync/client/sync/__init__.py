"""Bidirectional synchronization of a library root with the server.

Architecture:
    FileWatcher ──┐
                  ├─► EventQueue ─► SyncCoordinator ─► worker pool
    RealtimeChannel ┘                    │
                                   Reconciler (full passes)

Components:
- **SyncCoordinator**: Owns the state machine, consumes the queue
- **Reconciler**: Scan + catalog + plan + parallel execution
- **ConflictResolver**: Applies keep-local / keep-remote / keep-both
  decisions obtained through a ConflictDecider
- **RealtimeChannel**: WebSocket push notifications with backoff
- **FileWatcher**: Debounced local change detection with write suppression
- **EventQueue**: Thread-safe priority queue for sync events
- **PathLocks**: Per-path exclusivity
"""

from librarysync.client.sync.channel import ChannelState, RealtimeChannel
from librarysync.client.sync.conflict import (
    CallbackDecider,
    ConflictDecider,
    ConflictResolver,
    PendingDecisions,
    PolicyDecider,
    generate_conflict_filename,
)
from librarysync.client.sync.coordinator import SyncCoordinator
from librarysync.client.sync.ignore import DEFAULT_IGNORE_PATTERNS, IgnorePatterns
from librarysync.client.sync.locks import PathLocks
from librarysync.client.sync.queue import EventQueue
from librarysync.client.sync.reconciler import Reconciler, plan
from librarysync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RETRIES,
    backoff_delay,
    retry_with_backoff,
)
from librarysync.client.sync.scanner import LocalFile, resolve_local_path, scan_library
from librarysync.client.sync.types import (
    ActionType,
    ConflictInfo,
    ConflictOutcome,
    ConflictResolution,
    ConflictUnresolvedError,
    ErrorCallback,
    SyncAction,
    SyncError,
    SyncErrorReport,
    SyncEvent,
    SyncEventSource,
    SyncEventType,
    SyncResult,
    UnsafePathError,
)
from librarysync.client.sync.watcher import FileWatcher, WriteSuppressor

__all__ = [
    # Coordinator
    "SyncCoordinator",
    # Reconciliation
    "Reconciler",
    "plan",
    "LocalFile",
    "resolve_local_path",
    "scan_library",
    # Conflicts
    "CallbackDecider",
    "ConflictDecider",
    "ConflictResolver",
    "PendingDecisions",
    "PolicyDecider",
    "generate_conflict_filename",
    # Realtime channel
    "ChannelState",
    "RealtimeChannel",
    # Watcher
    "FileWatcher",
    "WriteSuppressor",
    "DEFAULT_IGNORE_PATTERNS",
    "IgnorePatterns",
    # Plumbing
    "EventQueue",
    "PathLocks",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_BACKOFF",
    "DEFAULT_MAX_RETRIES",
    "backoff_delay",
    "retry_with_backoff",
    # Types
    "ActionType",
    "ConflictInfo",
    "ConflictOutcome",
    "ConflictResolution",
    "ConflictUnresolvedError",
    "ErrorCallback",
    "SyncAction",
    "SyncError",
    "SyncErrorReport",
    "SyncEvent",
    "SyncEventSource",
    "SyncEventType",
    "SyncResult",
    "UnsafePathError",
]
