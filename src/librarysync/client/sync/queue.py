"""Event queue for sync coordination.

This module provides:
- EventQueue: Thread-safe priority queue keyed by path

Producers (the watcher and the realtime channel) only ever put SyncEvents
into this queue; the coordinator thread is the single consumer. Processing
order follows SyncEventType values, with resync requests first and remote
changes last.

At most one event is pending per path:
- a newer event from the same side replaces the pending one, unless it
  carries an older file mtime
- a local and a remote event for the same path are concurrent edits; both
  are dropped in favor of a full resync, where the conflict rules apply

The queue is in-memory only. The server catalog is the source of truth and a
full reconciliation runs after every (re)connection.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import TYPE_CHECKING

from librarysync.client.sync.types import RESYNC_PATH, SyncEvent, SyncEventSource

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

# (priority, timestamp, sequence, path)
_HeapEntry = tuple[int, float, int, str]


class EventQueue:
    """Thread-safe priority queue with one pending event per path.

    Replaced events stay in the heap and are skipped when popped; the
    per-path map decides which entry is current.
    """

    def __init__(self, max_size: int = 0) -> None:
        """Initialize the event queue.

        Args:
            max_size: Maximum number of distinct pending paths (0 = unlimited).
        """
        self._lock = threading.RLock()
        self._not_empty = threading.Condition(self._lock)
        self._heap: list[_HeapEntry] = []
        self._pending: dict[str, tuple[int, SyncEvent]] = {}
        self._sequence = itertools.count()
        self._max_size = max_size
        self._closed = False

    def put(self, event: SyncEvent) -> bool:
        """Queue an event, merging it with any pending event for its path.

        Returns:
            True if the event was accepted (possibly merged), False if the
            queue is full.

        Raises:
            RuntimeError: If the queue is closed.
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Queue is closed")

            pending = self._pending.get(event.path)
            if pending is None:
                if self._max_size > 0 and len(self._pending) >= self._max_size:
                    logger.warning(
                        "Event queue full (%d paths), dropping %s", self._max_size, event
                    )
                    return False
                self._push(event)
                return True

            current = pending[1]
            if self._concurrent(current, event):
                logger.info(
                    "Local and remote changes for %s pending together, scheduling resync",
                    event.path,
                )
                del self._pending[event.path]
                self._merge_resync(SyncEvent.resync(f"concurrent changes to {event.path}"))
                return True

            if self._is_stale(current, event):
                logger.debug("Dropping %s: file mtime older than pending event", event)
                return True

            logger.debug(
                "Replacing %s with %s for %s",
                current.event_type.name,
                event.event_type.name,
                event.path,
            )
            self._push(event)
            return True

    @staticmethod
    def _concurrent(current: SyncEvent, new: SyncEvent) -> bool:
        sides = {current.source, new.source}
        return sides == {SyncEventSource.LOCAL, SyncEventSource.REMOTE}

    @staticmethod
    def _is_stale(current: SyncEvent, new: SyncEvent) -> bool:
        old_mtime = current.metadata.get("mtime")
        new_mtime = new.metadata.get("mtime")
        return old_mtime is not None and new_mtime is not None and new_mtime < old_mtime

    def _merge_resync(self, event: SyncEvent) -> None:
        if RESYNC_PATH not in self._pending:
            self._push(event)

    def _push(self, event: SyncEvent) -> None:
        sequence = next(self._sequence)
        self._pending[event.path] = (sequence, event)
        heapq.heappush(self._heap, (event.priority, event.timestamp, sequence, event.path))
        self._not_empty.notify()
        logger.debug("Queued %s (%d pending)", event, len(self._pending))

    def _pop_current(self) -> SyncEvent | None:
        while self._heap:
            _, _, sequence, path = heapq.heappop(self._heap)
            pending = self._pending.get(path)
            if pending is not None and pending[0] == sequence:
                del self._pending[path]
                return pending[1]
        return None

    def get(self, timeout: float | None = None) -> SyncEvent | None:
        """Take the highest priority event, blocking until one is available.

        Args:
            timeout: Maximum seconds to wait (None = wait forever).

        Returns:
            The event, or None if the timeout expired.

        Raises:
            RuntimeError: If the queue is closed and empty.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._not_empty:
            while not self._pending:
                if self._closed:
                    raise RuntimeError("Queue is closed")
                if deadline is None:
                    self._not_empty.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._not_empty.wait(timeout=remaining)

            event = self._pop_current()
            if event is not None:
                logger.debug("Dequeued %s (%d pending)", event, len(self._pending))
            return event

    def get_nowait(self) -> SyncEvent | None:
        """Take the highest priority event without blocking."""
        return self.get(timeout=0)

    def remove(self, path: str) -> SyncEvent | None:
        """Drop the pending event for a path, if any."""
        with self._lock:
            pending = self._pending.pop(path, None)
            return pending[1] if pending else None

    def has_event(self, path: str) -> bool:
        """Check if an event is pending for a path."""
        with self._lock:
            return path in self._pending

    def clear(self) -> int:
        """Drop every pending event.

        Returns:
            Number of events dropped.
        """
        with self._lock:
            count = len(self._pending)
            self._pending.clear()
            self._heap.clear()
            return count

    def close(self) -> None:
        """Close the queue and wake up waiting consumers."""
        with self._lock:
            self._closed = True
            self._not_empty.notify_all()

    def reopen(self) -> None:
        """Reopen a closed queue, discarding stale events."""
        with self._lock:
            self.clear()
            self._closed = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __iter__(self) -> Iterator[SyncEvent]:
        """Iterate over pending events in processing order without removing them."""
        with self._lock:
            return iter(sorted(event for _, event in self._pending.values()))

    def __bool__(self) -> bool:
        with self._lock:
            return bool(self._pending)

    @property
    def is_closed(self) -> bool:
        """Check if the queue is closed."""
        return self._closed
