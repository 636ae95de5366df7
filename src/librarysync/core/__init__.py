"""Core module - Shared hashing, configuration and data model."""

from librarysync.core.config import MetadataFailurePolicy, ServerConfig, SyncSettings
from librarysync.core.hashing import compute_bytes_hash, compute_file_hash
from librarysync.core.types import (
    ChangeEvent,
    ChangeKind,
    FileRecord,
    SyncPhase,
    SyncState,
)

__all__ = [
    # Config
    "MetadataFailurePolicy",
    "ServerConfig",
    "SyncSettings",
    # Hashing
    "compute_bytes_hash",
    "compute_file_hash",
    # Types
    "ChangeEvent",
    "ChangeKind",
    "FileRecord",
    "SyncPhase",
    "SyncState",
]
