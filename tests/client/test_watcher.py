"""Tests for file watcher module."""

from __future__ import annotations

import time
from collections.abc import Iterator
from pathlib import Path

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from librarysync.client.sync.ignore import IgnorePatterns
from librarysync.client.sync.queue import EventQueue
from librarysync.client.sync.types import SyncEventSource, SyncEventType
from librarysync.client.sync.watcher import (
    DebouncedEventHandler,
    FileWatcher,
    WriteSuppressor,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestWriteSuppressor:
    """Tests for WriteSuppressor."""

    def test_not_suppressed_by_default(self) -> None:
        """Unknown paths are not suppressed."""
        assert WriteSuppressor().is_suppressed("a.md") is False

    def test_suppressed_while_active(self) -> None:
        """Paths are suppressed inside the block."""
        suppressor = WriteSuppressor()

        with suppressor.suppress("a.md", "b.md"):
            assert suppressor.is_suppressed("a.md") is True
            assert suppressor.is_suppressed("b.md") is True
            assert suppressor.is_suppressed("c.md") is False

    def test_grace_period(self) -> None:
        """Suppression lasts for the grace period after the write."""
        clock = FakeClock()
        suppressor = WriteSuppressor(grace_s=1.0, clock=clock)

        with suppressor.suppress("a.md"):
            pass

        clock.now += 0.5
        assert suppressor.is_suppressed("a.md") is True
        clock.now += 1.0
        assert suppressor.is_suppressed("a.md") is False

    def test_nested_blocks(self) -> None:
        """A path stays suppressed until the outermost block ends."""
        clock = FakeClock()
        suppressor = WriteSuppressor(grace_s=0.0, clock=clock)

        with suppressor.suppress("a.md"):
            with suppressor.suppress("a.md"):
                pass
            clock.now += 5.0
            assert suppressor.is_suppressed("a.md") is True

        clock.now += 5.0
        assert suppressor.is_suppressed("a.md") is False

    def test_released_on_exception(self) -> None:
        """An exception inside the block still releases the path."""
        clock = FakeClock()
        suppressor = WriteSuppressor(grace_s=0.1, clock=clock)

        with pytest.raises(OSError), suppressor.suppress("a.md"):
            raise OSError("disk full")

        clock.now += 1.0
        assert suppressor.is_suppressed("a.md") is False


class TestDebouncedEventHandler:
    """Tests for DebouncedEventHandler driven directly with watchdog events."""

    @pytest.fixture
    def base(self, tmp_path: Path) -> Path:
        """Create the library root."""
        root = tmp_path / "library"
        root.mkdir()
        return root.resolve()

    @pytest.fixture
    def event_queue(self) -> EventQueue:
        """Create an event queue."""
        return EventQueue()

    @pytest.fixture
    def suppressor(self) -> WriteSuppressor:
        """Create a write suppressor."""
        return WriteSuppressor()

    @pytest.fixture
    def handler(
        self, base: Path, event_queue: EventQueue, suppressor: WriteSuppressor
    ) -> Iterator[DebouncedEventHandler]:
        """Create a handler with a long debounce window flushed by hand."""
        handler = DebouncedEventHandler(
            base, event_queue, suppressor, debounce_ms=60_000, ignore_patterns=IgnorePatterns()
        )
        yield handler
        handler.stop()

    def drain(self, event_queue: EventQueue) -> list:
        """Pop all queued events."""
        events = []
        while (event := event_queue.get_nowait()) is not None:
            events.append(event)
        return events

    def test_create_then_modify_is_create(
        self, base: Path, handler: DebouncedEventHandler, event_queue: EventQueue
    ) -> None:
        """A create followed by modifies within the window stays a create."""
        path = base / "a.md"
        path.write_text("x")

        handler.on_created(FileCreatedEvent(str(path)))
        handler.on_modified(FileModifiedEvent(str(path)))
        handler._flush_changes()

        events = self.drain(event_queue)
        assert len(events) == 1
        assert events[0].event_type == SyncEventType.LOCAL_CREATED
        assert events[0].path == "a.md"
        assert events[0].source == SyncEventSource.LOCAL
        assert events[0].metadata["size"] == 1

    def test_nested_path_is_relative(
        self, base: Path, handler: DebouncedEventHandler, event_queue: EventQueue
    ) -> None:
        """Events carry POSIX paths relative to the root."""
        (base / "notes").mkdir()
        path = base / "notes" / "b.md"
        path.write_text("b")

        handler.on_modified(FileModifiedEvent(str(path)))
        handler._flush_changes()

        assert [e.path for e in self.drain(event_queue)] == ["notes/b.md"]

    def test_deleted(
        self, base: Path, handler: DebouncedEventHandler, event_queue: EventQueue
    ) -> None:
        """Deletes are reported without stat metadata."""
        handler.on_deleted(FileDeletedEvent(str(base / "gone.md")))
        handler._flush_changes()

        events = self.drain(event_queue)
        assert events[0].event_type == SyncEventType.LOCAL_DELETED
        assert "mtime" not in events[0].metadata

    def test_move_is_delete_plus_create(
        self, base: Path, handler: DebouncedEventHandler, event_queue: EventQueue
    ) -> None:
        """A rename becomes a delete of the source and a create of the target."""
        (base / "new.md").write_text("n")

        handler.on_moved(FileMovedEvent(str(base / "old.md"), str(base / "new.md")))
        handler._flush_changes()

        events = {e.path: e.event_type for e in self.drain(event_queue)}
        assert events == {
            "old.md": SyncEventType.LOCAL_DELETED,
            "new.md": SyncEventType.LOCAL_CREATED,
        }

    def test_directory_move_expands_to_files(
        self, base: Path, handler: DebouncedEventHandler, event_queue: EventQueue
    ) -> None:
        """Renaming a folder moves every file below it, even without per-file events."""
        (base / "archive" / "sub").mkdir(parents=True)
        (base / "archive" / "a.md").write_text("a")
        (base / "archive" / "sub" / "b.md").write_text("b")
        (base / "archive" / "a.md.swp").write_text("swap")

        handler.on_moved(DirMovedEvent(str(base / "notes"), str(base / "archive")))
        handler._flush_changes()

        events = {e.path: e.event_type for e in self.drain(event_queue)}
        assert events == {
            "notes/a.md": SyncEventType.LOCAL_DELETED,
            "notes/sub/b.md": SyncEventType.LOCAL_DELETED,
            "archive/a.md": SyncEventType.LOCAL_CREATED,
            "archive/sub/b.md": SyncEventType.LOCAL_CREATED,
        }

    def test_directory_move_with_file_events_not_duplicated(
        self, base: Path, handler: DebouncedEventHandler, event_queue: EventQueue
    ) -> None:
        """Per-file move events for the same rename collapse with the expansion."""
        (base / "archive").mkdir()
        (base / "archive" / "a.md").write_text("a")

        handler.on_moved(DirMovedEvent(str(base / "notes"), str(base / "archive")))
        handler.on_moved(
            FileMovedEvent(str(base / "notes" / "a.md"), str(base / "archive" / "a.md"))
        )
        handler._flush_changes()

        assert sorted(e.path for e in self.drain(event_queue)) == ["archive/a.md", "notes/a.md"]

    def test_suppressed_path_dropped(
        self,
        base: Path,
        handler: DebouncedEventHandler,
        event_queue: EventQueue,
        suppressor: WriteSuppressor,
    ) -> None:
        """Engine writes are not echoed back as local changes."""
        path = base / "a.md"
        with suppressor.suppress("a.md"):
            path.write_text("from server")
            handler.on_modified(FileModifiedEvent(str(path)))
            handler._flush_changes()

        assert self.drain(event_queue) == []

    def test_ignored_path_dropped(
        self, base: Path, handler: DebouncedEventHandler, event_queue: EventQueue
    ) -> None:
        """Temp and editor files never reach the queue."""
        path = base / "a.md.swp"
        path.write_text("x")

        handler.on_created(FileCreatedEvent(str(path)))
        handler._flush_changes()

        assert self.drain(event_queue) == []

    def test_directory_events_ignored(
        self, base: Path, handler: DebouncedEventHandler, event_queue: EventQueue
    ) -> None:
        """Only file events are tracked."""
        (base / "sub").mkdir()

        handler.on_created(DirCreatedEvent(str(base / "sub")))
        handler._flush_changes()

        assert self.drain(event_queue) == []

    def test_disabled_handler_drops_events(
        self, base: Path, handler: DebouncedEventHandler, event_queue: EventQueue
    ) -> None:
        """A disabled handler forwards nothing."""
        path = base / "a.md"
        path.write_text("x")
        handler.enabled = False

        handler.on_created(FileCreatedEvent(str(path)))
        handler._flush_changes()

        assert self.drain(event_queue) == []

    def test_vanished_file_dropped(
        self, base: Path, handler: DebouncedEventHandler, event_queue: EventQueue
    ) -> None:
        """A file removed before the flush produces no create."""
        path = base / "a.md"
        path.write_text("x")
        handler.on_created(FileCreatedEvent(str(path)))
        path.unlink()

        handler._flush_changes()

        assert self.drain(event_queue) == []

    def test_closed_queue_does_not_raise(
        self, base: Path, handler: DebouncedEventHandler, event_queue: EventQueue
    ) -> None:
        """Flushing into a closed queue is silently dropped."""
        path = base / "a.md"
        path.write_text("x")
        handler.on_created(FileCreatedEvent(str(path)))
        event_queue.close()

        handler._flush_changes()


class TestFileWatcher:
    """Tests for FileWatcher class."""

    @pytest.fixture
    def watch_dir(self, tmp_path: Path) -> Path:
        """Create a watch directory."""
        watch = tmp_path / "library"
        watch.mkdir()
        return watch

    @pytest.fixture
    def event_queue(self) -> EventQueue:
        """Create an event queue."""
        return EventQueue()

    def test_create_watcher(self, watch_dir: Path, event_queue: EventQueue) -> None:
        """Should create a watcher for a directory."""
        watcher = FileWatcher(watch_dir, event_queue)

        assert watcher.watch_path == watch_dir.resolve()
        assert watcher.is_running is False
        assert isinstance(watcher.suppressor, WriteSuppressor)

    def test_shares_given_suppressor(self, watch_dir: Path, event_queue: EventQueue) -> None:
        """The suppressor passed in is the one used."""
        suppressor = WriteSuppressor()
        watcher = FileWatcher(watch_dir, event_queue, suppressor=suppressor)

        assert watcher.suppressor is suppressor

    def test_watcher_requires_directory(
        self, tmp_path: Path, event_queue: EventQueue
    ) -> None:
        """Should raise if path is not a directory."""
        file_path = tmp_path / "file.txt"
        file_path.touch()

        with pytest.raises(ValueError, match="must be a directory"):
            FileWatcher(file_path, event_queue)

    def test_start_stop(self, watch_dir: Path, event_queue: EventQueue) -> None:
        """Should start and stop cleanly."""
        watcher = FileWatcher(watch_dir, event_queue)

        watcher.start()
        assert watcher.is_running is True
        assert watcher.enabled is True

        watcher.stop()
        assert watcher.is_running is False

    def test_context_manager(self, watch_dir: Path, event_queue: EventQueue) -> None:
        """Should work as context manager."""
        with FileWatcher(watch_dir, event_queue) as watcher:
            assert watcher.is_running is True
        assert watcher.is_running is False

    def test_disable_enable(self, watch_dir: Path, event_queue: EventQueue) -> None:
        """Disabling and enabling toggles forwarding."""
        watcher = FileWatcher(watch_dir, event_queue)

        watcher.disable()
        assert watcher.enabled is False
        watcher.enable()
        assert watcher.enabled is True

    def test_detects_file_creation(
        self, watch_dir: Path, event_queue: EventQueue
    ) -> None:
        """Should detect when a file is created and inject an event."""
        with FileWatcher(watch_dir, event_queue, debounce_ms=100):
            time.sleep(0.2)
            (watch_dir / "newfile.md").write_text("hello")

            event = event_queue.get(timeout=3.0)

        assert event is not None
        assert event.path == "newfile.md"
        assert event.event_type in (SyncEventType.LOCAL_CREATED, SyncEventType.LOCAL_MODIFIED)

    def test_detects_file_deletion(
        self, watch_dir: Path, event_queue: EventQueue
    ) -> None:
        """Should detect when a file is deleted."""
        target = watch_dir / "old.md"
        target.write_text("bye")

        with FileWatcher(watch_dir, event_queue, debounce_ms=100):
            time.sleep(0.2)
            target.unlink()

            event = event_queue.get(timeout=3.0)

        assert event is not None
        assert event.path == "old.md"
        assert event.event_type == SyncEventType.LOCAL_DELETED

    def test_detects_directory_rename(
        self, watch_dir: Path, event_queue: EventQueue
    ) -> None:
        """Renaming a folder reports its files under the old and new names."""
        (watch_dir / "notes").mkdir()
        (watch_dir / "notes" / "a.md").write_text("a")

        with FileWatcher(watch_dir, event_queue, debounce_ms=100):
            time.sleep(0.2)
            (watch_dir / "notes").rename(watch_dir / "archive")

            seen: dict[str, SyncEventType] = {}
            deadline = time.monotonic() + 3.0
            while len(seen) < 2 and time.monotonic() < deadline:
                event = event_queue.get(timeout=0.5)
                if event is not None:
                    seen[event.path] = event.event_type

        assert seen.get("notes/a.md") == SyncEventType.LOCAL_DELETED
        assert seen.get("archive/a.md") in (
            SyncEventType.LOCAL_CREATED,
            SyncEventType.LOCAL_MODIFIED,
        )

    def test_suppressed_write_not_reported(
        self, watch_dir: Path, event_queue: EventQueue
    ) -> None:
        """Writes made under suppression do not produce events."""
        suppressor = WriteSuppressor(grace_s=2.0)

        with FileWatcher(watch_dir, event_queue, suppressor=suppressor, debounce_ms=100):
            time.sleep(0.2)
            with suppressor.suppress("engine.md"):
                (watch_dir / "engine.md").write_text("from server")

            event = event_queue.get(timeout=0.8)

        assert event is None
