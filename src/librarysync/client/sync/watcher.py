"""File system watcher with debouncing and write suppression.

This module provides:
- WriteSuppressor: Marks paths the engine itself is writing so the watcher
  does not echo them back as local changes
- FileWatcher: Watches the library root using watchdog
- Debouncing: Coalesces rapid events per path
- Direct EventQueue integration for event-driven sync
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from librarysync.client.sync.ignore import IgnorePatterns
from librarysync.client.sync.types import SyncEvent, SyncEventSource, SyncEventType

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

    from librarysync.client.sync.queue import EventQueue

logger = logging.getLogger(__name__)


def _decode(raw_path: str | bytes) -> str:
    if isinstance(raw_path, bytes):
        return raw_path.decode("utf-8", errors="replace")
    return raw_path


class WriteSuppressor:
    """Tracks engine-initiated local writes.

    A path is suppressed while a ``suppress()`` block for it is active and
    for ``grace_s`` seconds after it ends, because the observer reports
    changes asynchronously after the write has completed.
    """

    def __init__(
        self,
        grace_s: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._grace_s = grace_s
        self._clock = clock
        self._lock = threading.Lock()
        self._active: dict[str, int] = {}
        self._released: dict[str, float] = {}

    @contextmanager
    def suppress(self, *paths: str) -> Iterator[None]:
        """Suppress watcher events for the given relative paths."""
        with self._lock:
            for path in paths:
                self._active[path] = self._active.get(path, 0) + 1
        try:
            yield
        finally:
            now = self._clock()
            with self._lock:
                for path in paths:
                    self._active[path] -= 1
                    if self._active[path] == 0:
                        del self._active[path]
                    self._released[path] = now

    def is_suppressed(self, path: str) -> bool:
        """Check whether events for a path must be dropped."""
        with self._lock:
            if path in self._active:
                return True
            released = self._released.get(path)
            if released is None:
                return False
            if self._clock() - released <= self._grace_s:
                return True
            del self._released[path]
            return False


class ChangeType(Enum):
    """Type of file system change."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass
class FileChange:
    """Represents a file system change event."""

    path: Path
    relative_path: str
    change_type: ChangeType
    timestamp: float = field(default_factory=time.time)


class DebouncedEventHandler(FileSystemEventHandler):
    """Event handler that debounces rapid file system events."""

    def __init__(
        self,
        base_path: Path,
        event_queue: EventQueue,
        suppressor: WriteSuppressor,
        debounce_ms: int = 250,
        ignore_patterns: IgnorePatterns | None = None,
    ) -> None:
        """Initialize the debounced handler.

        Args:
            base_path: Library root being watched.
            event_queue: Queue to inject sync events into.
            suppressor: Engine write tracker.
            debounce_ms: Quiet period before pending changes are flushed.
            ignore_patterns: Patterns for files to ignore.
        """
        super().__init__()
        self._base_path = base_path
        self._event_queue = event_queue
        self._suppressor = suppressor
        self._debounce_s = debounce_ms / 1000.0
        self._ignore = ignore_patterns or IgnorePatterns()
        self.enabled = True

        # Pending changes keyed by relative path
        self._pending: dict[str, FileChange] = {}
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    def _schedule_flush(self) -> None:
        """Schedule a flush of pending changes after the debounce window."""
        if self._timer:
            self._timer.cancel()

        self._timer = threading.Timer(self._debounce_s, self._flush_changes)
        self._timer.daemon = True
        self._timer.start()

    def _flush_changes(self) -> None:
        """Flush pending changes to the event queue."""
        with self._lock:
            if not self._pending:
                return
            changes = list(self._pending.values())
            self._pending.clear()
            self._timer = None

        for change in changes:
            self._inject_event(change)

    def _inject_event(self, change: FileChange) -> None:
        """Convert a FileChange to a SyncEvent and inject into queue."""
        if not self.enabled or self._suppressor.is_suppressed(change.relative_path):
            return

        type_mapping = {
            ChangeType.CREATED: SyncEventType.LOCAL_CREATED,
            ChangeType.MODIFIED: SyncEventType.LOCAL_MODIFIED,
            ChangeType.DELETED: SyncEventType.LOCAL_DELETED,
        }
        event_type = type_mapping[change.change_type]

        metadata: dict[str, str | int | float] = {
            "absolute_path": str(change.path),
            "timestamp": change.timestamp,
        }
        if change.change_type != ChangeType.DELETED:
            try:
                stat = change.path.stat()
            except OSError:
                # Gone again before we got here; the delete event follows
                return
            metadata["mtime"] = stat.st_mtime
            metadata["size"] = stat.st_size

        event = SyncEvent.create(
            event_type=event_type,
            path=change.relative_path,
            source=SyncEventSource.LOCAL,
            metadata=metadata,
        )
        try:
            self._event_queue.put(event)
        except RuntimeError:
            logger.debug("Queue closed, dropping %s", event)
            return
        logger.debug("Watcher injected event: %s", event)

    def _relative(self, raw_path: str | bytes) -> tuple[Path, str] | None:
        """Resolve an event path to (absolute, relative) or None if ignored."""
        path = Path(_decode(raw_path))
        try:
            rel_path = path.relative_to(self._base_path).as_posix()
        except ValueError:
            logger.warning("Path %s is not relative to %s", path, self._base_path)
            return None
        if rel_path in ("", ".") or self._ignore.should_ignore(path, self._base_path):
            return None
        return path, rel_path

    def _record(self, raw_path: str | bytes, change_type: ChangeType) -> None:
        """Record a pending change for a path, replacing older ones."""
        if not self.enabled:
            return
        resolved = self._relative(raw_path)
        if resolved is None:
            return
        path, rel_path = resolved
        if self._suppressor.is_suppressed(rel_path):
            logger.debug("Suppressed engine write event for %s", rel_path)
            return

        change = FileChange(path=path, relative_path=rel_path, change_type=change_type)
        with self._lock:
            previous = self._pending.get(rel_path)
            # Create followed by modify within the window is still a create
            if (
                previous is not None
                and previous.change_type == ChangeType.CREATED
                and change_type == ChangeType.MODIFIED
            ):
                change.change_type = ChangeType.CREATED
            self._pending[rel_path] = change
            self._schedule_flush()

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle created event."""
        if isinstance(event, FileCreatedEvent):
            self._record(event.src_path, ChangeType.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle modified event."""
        if isinstance(event, FileModifiedEvent):
            self._record(event.src_path, ChangeType.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        """Handle deleted event."""
        if isinstance(event, FileDeletedEvent):
            self._record(event.src_path, ChangeType.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle moved event as delete of the old path plus create of the new."""
        if isinstance(event, FileMovedEvent):
            self._record(event.src_path, ChangeType.DELETED)
            self._record(event.dest_path, ChangeType.CREATED)
        elif isinstance(event, DirMovedEvent):
            self._record_directory_move(_decode(event.src_path), _decode(event.dest_path))

    def _record_directory_move(self, src_path: str, dest_path: str) -> None:
        """Record every file of a renamed directory as moved.

        Some observer backends report only the directory itself; per-file
        events from the others collapse into the same pending entries.
        """
        src_dir = Path(src_path)
        dest_dir = Path(dest_path)
        logger.debug("Directory moved: %s -> %s", src_dir, dest_dir)
        for root_str, dirs, files in os.walk(dest_dir):
            root = Path(root_str)
            dirs[:] = [d for d in dirs if not (root / d).is_symlink()]
            for name in files:
                moved = root / name
                self._record(str(src_dir / moved.relative_to(dest_dir)), ChangeType.DELETED)
                self._record(str(moved), ChangeType.CREATED)

    def stop(self) -> None:
        """Stop any pending timers."""
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None
            self._pending.clear()


class FileWatcher:
    """Watches the library root for file changes with debouncing.

    Injects SyncEvent objects directly into an EventQueue. Events for paths
    being written by the engine (see WriteSuppressor) are dropped, and a
    disabled watcher drops everything.
    """

    def __init__(
        self,
        watch_path: Path,
        event_queue: EventQueue,
        suppressor: WriteSuppressor | None = None,
        debounce_ms: int = 250,
        ignore_patterns: list[str] | None = None,
    ) -> None:
        """Initialize the file watcher.

        Args:
            watch_path: Directory to watch.
            event_queue: EventQueue to inject events into.
            suppressor: Engine write tracker shared with the coordinator.
            debounce_ms: Debounce window in milliseconds.
            ignore_patterns: Additional patterns to ignore.

        Raises:
            ValueError: If watch_path is not a directory.
        """
        self._watch_path = Path(watch_path).resolve()
        if not self._watch_path.is_dir():
            raise ValueError(f"Watch path must be a directory: {watch_path}")

        self._event_queue = event_queue
        self._suppressor = suppressor or WriteSuppressor()
        self._ignore = IgnorePatterns.for_root(self._watch_path, ignore_patterns)

        self._handler = DebouncedEventHandler(
            base_path=self._watch_path,
            event_queue=event_queue,
            suppressor=self._suppressor,
            debounce_ms=debounce_ms,
            ignore_patterns=self._ignore,
        )

        self._observer: BaseObserver | None = None
        self._running = False

    @property
    def watch_path(self) -> Path:
        """Get the watched directory path."""
        return self._watch_path

    @property
    def suppressor(self) -> WriteSuppressor:
        """Get the write suppressor."""
        return self._suppressor

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._running

    @property
    def enabled(self) -> bool:
        """Check if events are being forwarded."""
        return self._handler.enabled

    def enable(self) -> None:
        """Forward events to the queue."""
        self._handler.enabled = True

    def disable(self) -> None:
        """Drop all events until re-enabled."""
        self._handler.enabled = False
        self._handler.stop()

    def start(self) -> None:
        """Start watching for changes."""
        if self._running:
            return

        self._observer = Observer()
        self._observer.schedule(self._handler, str(self._watch_path), recursive=True)
        self._observer.start()
        self._handler.enabled = True
        self._running = True
        logger.info("Watching %s", self._watch_path)

    def stop(self) -> None:
        """Stop watching for changes."""
        if not self._running:
            return

        self.disable()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None
        self._running = False
        logger.info("Stopped watching %s", self._watch_path)

    def __enter__(self) -> FileWatcher:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
