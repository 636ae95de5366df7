"""Tests for sync event queue module."""

from __future__ import annotations

import threading
import time

import pytest

from librarysync.client.sync.queue import EventQueue
from librarysync.client.sync.types import (
    RESYNC_PATH,
    SyncEvent,
    SyncEventSource,
    SyncEventType,
)


def local_event(
    path: str,
    event_type: SyncEventType = SyncEventType.LOCAL_MODIFIED,
    mtime: float | None = None,
) -> SyncEvent:
    """Create a local event, optionally carrying an mtime."""
    metadata: dict[str, str | int | float] = {}
    if mtime is not None:
        metadata["mtime"] = mtime
    return SyncEvent.create(event_type, path, SyncEventSource.LOCAL, metadata=metadata)


class TestSyncEvent:
    """Tests for SyncEvent dataclass."""

    def test_priority_order(self) -> None:
        """Resync first, then deletes, then local, then remote changes."""
        assert SyncEventType.RESYNC_REQUESTED < SyncEventType.LOCAL_DELETED
        assert SyncEventType.LOCAL_DELETED < SyncEventType.LOCAL_CREATED
        assert SyncEventType.REMOTE_DELETED < SyncEventType.REMOTE_MODIFIED
        assert SyncEventType.LOCAL_MODIFIED < SyncEventType.REMOTE_CREATED

    def test_create_event(self) -> None:
        """Test creating an event with factory method."""
        event = SyncEvent.create(
            event_type=SyncEventType.LOCAL_MODIFIED,
            path="notes/a.md",
            source=SyncEventSource.LOCAL,
        )

        assert event.event_type == SyncEventType.LOCAL_MODIFIED
        assert event.path == "notes/a.md"
        assert event.source == SyncEventSource.LOCAL
        assert event.priority == int(SyncEventType.LOCAL_MODIFIED)
        assert event.record is None
        assert event.metadata == {}

    def test_resync_event(self) -> None:
        """Resync requests are internal and keyed on the empty path."""
        event = SyncEvent.resync("channel connected")

        assert event.event_type == SyncEventType.RESYNC_REQUESTED
        assert event.source == SyncEventSource.INTERNAL
        assert event.path == RESYNC_PATH
        assert event.metadata["reason"] == "channel connected"

    def test_event_repr(self) -> None:
        """Repr should be readable."""
        event = local_event("a.md")
        assert repr(event) == "SyncEvent(LOCAL_MODIFIED, path='a.md', source=LOCAL)"


class TestEventQueue:
    """Tests for EventQueue class."""

    def test_put_and_get(self) -> None:
        """Test basic put and get operations."""
        queue = EventQueue()
        event = local_event("a.md")

        assert queue.put(event) is True
        assert len(queue) == 1
        assert queue.get(timeout=0.1) is event
        assert len(queue) == 0

    def test_priority_ordering(self) -> None:
        """Higher priority events come out first."""
        queue = EventQueue()
        queue.put(
            SyncEvent.create(SyncEventType.REMOTE_MODIFIED, "r.md", SyncEventSource.REMOTE)
        )
        queue.put(local_event("l.md"))
        queue.put(local_event("d.md", SyncEventType.LOCAL_DELETED))
        queue.put(SyncEvent.resync("test"))

        order = [queue.get_nowait().event_type for _ in range(4)]  # type: ignore[union-attr]
        assert order == [
            SyncEventType.RESYNC_REQUESTED,
            SyncEventType.LOCAL_DELETED,
            SyncEventType.LOCAL_MODIFIED,
            SyncEventType.REMOTE_MODIFIED,
        ]

    def test_deduplication(self) -> None:
        """Only the latest event per path is kept."""
        queue = EventQueue()
        queue.put(local_event("a.md", SyncEventType.LOCAL_CREATED))
        queue.put(local_event("a.md", SyncEventType.LOCAL_MODIFIED))

        assert len(queue) == 1
        assert queue.get_nowait().event_type == SyncEventType.LOCAL_MODIFIED  # type: ignore[union-attr]

    def test_resync_requests_coalesce(self) -> None:
        """Several resync requests collapse into one pass."""
        queue = EventQueue()
        queue.put(SyncEvent.resync("startup"))
        queue.put(SyncEvent.resync("channel connected"))

        assert len(queue) == 1

    def test_older_mtime_ignored(self) -> None:
        """A late event with an older mtime cannot replace a fresher one."""
        queue = EventQueue()
        queue.put(local_event("a.md", mtime=200.0))
        queue.put(local_event("a.md", SyncEventType.LOCAL_CREATED, mtime=100.0))

        event = queue.get_nowait()
        assert event is not None
        assert event.metadata["mtime"] == 200.0

    def test_local_and_remote_escalate_to_resync(self) -> None:
        """Pending local and remote changes to one path become a single resync."""
        queue = EventQueue()
        queue.put(local_event("a.md"))
        queue.put(
            SyncEvent.create(SyncEventType.REMOTE_MODIFIED, "a.md", SyncEventSource.REMOTE)
        )
        queue.put(
            SyncEvent.create(SyncEventType.REMOTE_CREATED, "b.md", SyncEventSource.REMOTE)
        )
        queue.put(local_event("b.md"))

        assert queue.has_event("a.md") is False
        assert queue.has_event("b.md") is False
        assert [e.event_type for e in queue] == [SyncEventType.RESYNC_REQUESTED]
        assert queue.get_nowait().metadata["reason"] == "concurrent changes to a.md"  # type: ignore[union-attr]
        assert queue.get_nowait() is None

    def test_get_timeout(self) -> None:
        """get() returns None after the timeout."""
        queue = EventQueue()
        start = time.monotonic()

        assert queue.get(timeout=0.05) is None
        assert time.monotonic() - start >= 0.04

    def test_remove_and_has_event(self) -> None:
        """Pending events can be inspected and removed."""
        queue = EventQueue()
        queue.put(local_event("a.md"))

        assert queue.has_event("a.md") is True
        assert queue.remove("a.md") is not None
        assert queue.has_event("a.md") is False
        assert queue.remove("a.md") is None

    def test_clear(self) -> None:
        """clear() reports how many events were dropped."""
        queue = EventQueue()
        queue.put(local_event("a.md"))
        queue.put(local_event("b.md"))

        assert queue.clear() == 2
        assert not queue

    def test_max_size(self) -> None:
        """New paths are refused when full, updates still accepted."""
        queue = EventQueue(max_size=1)

        assert queue.put(local_event("a.md")) is True
        assert queue.put(local_event("b.md")) is False
        assert queue.put(local_event("a.md", SyncEventType.LOCAL_CREATED)) is True

    def test_iteration(self) -> None:
        """Iteration is in priority order and does not consume."""
        queue = EventQueue()
        queue.put(local_event("b.md"))
        queue.put(local_event("a.md", SyncEventType.LOCAL_DELETED))

        assert [e.path for e in queue] == ["a.md", "b.md"]
        assert len(queue) == 2

    def test_put_after_close(self) -> None:
        """Putting into a closed queue raises RuntimeError."""
        queue = EventQueue()
        queue.close()

        assert queue.is_closed is True
        with pytest.raises(RuntimeError):
            queue.put(local_event("a.md"))

    def test_close_wakes_waiter(self) -> None:
        """A blocked get() raises once the queue is closed."""
        queue = EventQueue()
        errors: list[Exception] = []

        def consumer() -> None:
            try:
                queue.get()
            except RuntimeError as e:
                errors.append(e)

        thread = threading.Thread(target=consumer)
        thread.start()
        time.sleep(0.05)
        queue.close()
        thread.join(timeout=1.0)

        assert not thread.is_alive()
        assert len(errors) == 1

    def test_reopen(self) -> None:
        """Reopening discards stale events and accepts new ones."""
        queue = EventQueue()
        queue.put(local_event("a.md"))
        queue.close()
        queue.reopen()

        assert queue.is_closed is False
        assert len(queue) == 0
        assert queue.put(local_event("b.md")) is True


class TestEventQueueThreadSafety:
    """Concurrent producers and a single consumer."""

    def test_concurrent_producers(self) -> None:
        """Every distinct path put by producers is delivered once."""
        queue = EventQueue()

        def producer(prefix: str) -> None:
            for i in range(50):
                queue.put(local_event(f"{prefix}/{i}.md"))

        threads = [threading.Thread(target=producer, args=(p,)) for p in ("a", "b", "c")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        seen = set()
        while (event := queue.get_nowait()) is not None:
            seen.add(event.path)
        assert len(seen) == 150
