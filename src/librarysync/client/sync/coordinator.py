"""Sync coordinator for one library root.

This module provides:
- SyncCoordinator: Owns the sync state machine and the event thread

The coordinator is the "brain" of the sync system:
1. Runs a full reconciliation, then starts the realtime channel and watcher
2. Consumes events from the EventQueue on a single thread
3. Dispatches per-file work to a bounded worker pool
4. Reports state transitions and per-file errors to its owner

State machine:
    OUT_OF_SYNC --start--> SYNCHRONIZING --success--> SYNCHRONIZED
    SYNCHRONIZED --disconnect--> OUT_OF_SYNC --reconnect--> SYNCHRONIZING
    SYNCHRONIZING --done, channel not connected--> OUT_OF_SYNC
    any failure --> OUT_OF_SYNC (last_error set)

Event handling:
    | Event            | Action                                          |
    |------------------|-------------------------------------------------|
    | RESYNC_REQUESTED | Full reconciliation (retried on network errors) |
    | REMOTE_*         | Download / mkdir / unlink, watcher suppressed   |
    | LOCAL_DELETED    | Delete on server, notify channel                |
    | LOCAL_CREATED    | Compare hash with server, upload, notify        |
    | LOCAL_MODIFIED   | Compare hash with server, upload, notify        |
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from librarysync.client.api import APIError, NetworkError, NotFoundError
from librarysync.client.sync.channel import RealtimeChannel
from librarysync.client.sync.conflict import ConflictResolver
from librarysync.client.sync.ignore import IgnorePatterns
from librarysync.client.sync.locks import PathLocks
from librarysync.client.sync.queue import EventQueue
from librarysync.client.sync.reconciler import Reconciler
from librarysync.client.sync.retry import retry_with_backoff
from librarysync.client.sync.scanner import LocalFile, resolve_local_path
from librarysync.client.sync.types import (
    ErrorCallback,
    SyncError,
    SyncErrorReport,
    SyncEvent,
    SyncEventSource,
    SyncEventType,
    SyncResult,
)
from librarysync.client.sync.watcher import FileWatcher, WriteSuppressor
from librarysync.core.config import MetadataFailurePolicy
from librarysync.core.hashing import compute_file_hash
from librarysync.core.types import ChangeEvent, ChangeKind, SyncPhase, SyncState

if TYPE_CHECKING:
    from librarysync.client.api import HTTPClient
    from librarysync.client.sync.conflict import ConflictDecider
    from librarysync.core.config import SyncSettings

logger = logging.getLogger(__name__)

StateCallback = Callable[[SyncState], None]
ChannelFactory = Callable[..., RealtimeChannel]
WatcherFactory = Callable[[Path, EventQueue, WriteSuppressor], FileWatcher]

_REMOTE_EVENT_TYPES = {
    ChangeKind.CREATED: SyncEventType.REMOTE_CREATED,
    ChangeKind.UPDATED: SyncEventType.REMOTE_MODIFIED,
    ChangeKind.DELETED: SyncEventType.REMOTE_DELETED,
}


class SyncCoordinator:
    """Central orchestrator for one library root.

    The coordinator runs in its own thread, consuming events from the queue.
    The watcher and the channel only ever put events into that queue.

    Usage:
        coordinator = SyncCoordinator(
            settings=SyncSettings(library_root=Path("~/Library")),
            client=HTTPClient(server_config),
            decider=PolicyDecider(ConflictResolution.KEEP_BOTH),
            on_state_change=print,
        )

        if coordinator.start():
            # ... changes flow in both directions ...
            coordinator.stop()
    """

    def __init__(
        self,
        settings: SyncSettings,
        client: HTTPClient,
        decider: ConflictDecider,
        channel_factory: ChannelFactory | None = None,
        watcher_factory: WatcherFactory | None = None,
        on_state_change: StateCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            settings: Library root and engine tunables.
            client: Transfer client.
            decider: Conflict decision port.
            channel_factory: Builds the realtime channel from callback
                keyword arguments (on_change, on_connected, on_disconnected,
                on_gave_up). Defaults to a RealtimeChannel on the client's
                server config.
            watcher_factory: Builds the watcher from (root, queue, suppressor).
            on_state_change: Called with a state snapshot on each transition.
            on_error: Called for every per-file or per-pass failure.
        """
        self._settings = settings
        self._client = client
        self._decider = decider
        self._channel_factory = channel_factory or self._default_channel
        self._watcher_factory = watcher_factory or self._default_watcher
        self._on_state_change = on_state_change
        self._on_error = on_error

        self._queue = EventQueue()
        self._locks = PathLocks()
        self._suppressor = WriteSuppressor(grace_s=settings.suppression_grace)

        self._root: Path | None = None
        self._ignore: IgnorePatterns | None = None
        self._reconciler: Reconciler | None = None
        if settings.library_root is not None:
            self._root = settings.library_root.resolve()
            self._root.mkdir(parents=True, exist_ok=True)
            self._ignore = IgnorePatterns.for_root(self._root, settings.ignore_patterns)
            resolver = ConflictResolver(
                client=client,
                base_path=self._root,
                decider=decider,
                suppressor=self._suppressor,
                decision_timeout=settings.decision_timeout,
            )
            self._reconciler = Reconciler(
                client=client,
                base_path=self._root,
                resolver=resolver,
                locks=self._locks,
                suppressor=self._suppressor,
                ignore=self._ignore,
                conflict_window=settings.conflict_window,
                max_workers=settings.max_workers,
                on_error=self._report,
            )

        # State
        self._state = SyncState()
        self._state_lock = threading.Lock()
        self._lock = threading.RLock()
        self._running = False
        self._stop_event = threading.Event()

        # Runtime components
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._channel: RealtimeChannel | None = None
        self._watcher: FileWatcher | None = None

    @property
    def state(self) -> SyncState:
        """Snapshot of the current sync state."""
        with self._state_lock:
            return replace(self._state)

    @property
    def is_running(self) -> bool:
        """Check if the coordinator thread is active."""
        return self._running

    @property
    def library_root(self) -> Path | None:
        """Resolved library root, or None if unconfigured."""
        return self._root

    @property
    def queue(self) -> EventQueue:
        """Event queue consumed by the coordinator."""
        return self._queue

    @property
    def suppressor(self) -> WriteSuppressor:
        """Watcher suppression shared by every engine write."""
        return self._suppressor

    @property
    def channel(self) -> RealtimeChannel | None:
        """Realtime channel, once started."""
        return self._channel

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start synchronizing the library root.

        Returns:
            False when the root is unconfigured, sync is already running or
            synchronizing, or the previous event thread has not exited yet;
            True when the coordinator was started.
        """
        with self._lock:
            if self._root is None:
                logger.warning("No library root configured, not starting sync")
                return False
            if self._running or self._state.phase == SyncPhase.SYNCHRONIZING:
                logger.debug("Sync already running, ignoring start request")
                return False
            if self._thread is not None and self._thread.is_alive():
                logger.warning("Previous sync run is still finishing, not starting")
                return False

            self._running = True
            # Each run owns its stop event; a lingering thread keeps the old one set
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._queue.reopen()
            self._executor = ThreadPoolExecutor(
                max_workers=self._settings.max_workers, thread_name_prefix="transfer"
            )
            self._thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="SyncCoordinator",
                daemon=True,
            )
            self._thread.start()
            logger.info("Sync started for %s", self._root)
            return True

    def stop(self, timeout: float = 5.0) -> None:
        """Stop syncing; in-flight transfers finish, nothing new starts.

        If the event thread does not exit within the timeout (for example
        while waiting on a conflict decision), it is left to finish on its
        own and start() is refused until it has.

        Args:
            timeout: Maximum time to wait for the event thread.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
            watcher, self._watcher = self._watcher, None
            channel, self._channel = self._channel, None
            logger.info("Sync stopping...")

        if watcher is not None:
            watcher.stop()
        if channel is not None:
            channel.stop()

        self._queue.close()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Sync thread still busy after %.1fs, leaving it to finish", timeout)
            else:
                self._thread = None

        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None

        self._set_state(SyncPhase.OUT_OF_SYNC)
        logger.info("Sync stopped")

    def sync_once(self) -> SyncResult:
        """Run one reconciliation pass synchronously.

        Raises:
            SyncError: If no library root is configured.
            APIError: If the catalog cannot be fetched after retries.
        """
        if self._reconciler is None:
            raise SyncError("No library root configured")
        cancel_event = self._stop_event if self._running else threading.Event()
        return self._reconcile("manual", cancel_event)

    def request_resync(self, reason: str = "requested") -> None:
        """Schedule a full reconciliation on the event thread."""
        self._enqueue(SyncEvent.resync(reason))

    # ------------------------------------------------------------------
    # Event thread
    # ------------------------------------------------------------------

    def _run(self, stop_event: threading.Event) -> None:
        """Initial reconciliation, then the main processing loop."""
        logger.debug("Coordinator processing loop started")
        try:
            self._reconcile("startup", stop_event)
        except Exception:
            # Already recorded; the channel's connect triggers another pass
            logger.debug("Initial reconciliation failed", exc_info=True)

        self._start_live(stop_event)

        while not stop_event.is_set():
            try:
                event = self._queue.get(timeout=0.1)
            except RuntimeError:
                break
            if event is None:
                continue
            try:
                self._process_event(event, stop_event)
            except Exception:
                logger.exception("Error processing event %s", event)

        logger.debug("Coordinator processing loop ended")

    def _start_live(self, stop_event: threading.Event) -> None:
        """Open the realtime channel and start watching the root.

        Nothing is started if the run was stopped in the meantime.
        """
        assert self._root is not None
        with self._lock:
            if stop_event.is_set():
                return
            try:
                self._watcher = self._watcher_factory(self._root, self._queue, self._suppressor)
                self._watcher.start()
            except (OSError, ValueError) as e:
                logger.error("Cannot watch %s: %s", self._root, e)
                self._report(SyncErrorReport("watch", str(e)))

            self._channel = self._channel_factory(
                on_change=self._on_remote_change,
                on_connected=self._on_channel_connected,
                on_disconnected=self._on_channel_disconnected,
                on_gave_up=self._on_channel_gave_up,
            )
            self._channel.start()

    def _process_event(self, event: SyncEvent, stop_event: threading.Event) -> None:
        """Process a single event from the queue."""
        logger.debug("Processing event: %s", event)
        if event.event_type == SyncEventType.RESYNC_REQUESTED:
            try:
                self._reconcile(str(event.metadata.get("reason", "requested")), stop_event)
            except Exception:
                logger.debug("Reconciliation failed", exc_info=True)
            return

        if event.source == SyncEventSource.REMOTE:
            self._submit(self._apply_remote, event)
        elif event.source == SyncEventSource.LOCAL:
            self._submit(self._apply_local, event)

    def _submit(self, func: Callable[[SyncEvent], None], event: SyncEvent) -> None:
        """Run an event handler on the worker pool."""
        executor = self._executor
        if executor is None or self._stop_event.is_set():
            return
        try:
            executor.submit(self._run_guarded, func, event)
        except RuntimeError:
            logger.debug("Worker pool shut down, dropping %s", event)

    def _run_guarded(self, func: Callable[[SyncEvent], None], event: SyncEvent) -> None:
        """Execute one event handler, reporting its failure."""
        operation = "apply remote change" if event.source == SyncEventSource.REMOTE else "upload"
        try:
            func(event)
        except (APIError, OSError, SyncError) as e:
            logger.warning("Failed to %s for %s: %s", operation, event.path, e)
            self._report(SyncErrorReport(operation, str(e), event.path))
        except Exception as e:
            logger.exception("Unexpected error handling %s", event)
            self._report(SyncErrorReport(operation, str(e), event.path))

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _reconcile(
        self, reason: str, cancel_event: threading.Event | None = None
    ) -> SyncResult:
        """Run a full pass, retrying the whole pass on network errors."""
        assert self._reconciler is not None
        reconciler = self._reconciler
        cancel_event = cancel_event or self._stop_event
        logger.info("Full reconciliation (%s)", reason)
        self._set_state(SyncPhase.SYNCHRONIZING)
        try:
            result = retry_with_backoff(
                lambda: reconciler.run(cancel_event),
                max_retries=self._settings.max_sync_retries,
                initial_backoff=self._settings.initial_reconnect_delay,
                max_backoff=self._settings.max_reconnect_delay,
                retryable_exceptions=(NetworkError,),
                stop_event=cancel_event,
            )
        except Exception as e:
            logger.error("Reconciliation failed: %s", e)
            self._set_state(SyncPhase.OUT_OF_SYNC, error=str(e))
            self._report(SyncErrorReport("reconcile", str(e)))
            raise

        if result.cancelled:
            self._set_state(SyncPhase.OUT_OF_SYNC, error="reconciliation cancelled")
        elif result.has_errors:
            self._set_state(
                SyncPhase.OUT_OF_SYNC,
                error=f"{len(result.errors)} file(s) failed, first: {result.errors[0]}",
            )
        elif self._channel_down():
            # Files match now, but remote changes are no longer pushed to us
            self._set_state(SyncPhase.OUT_OF_SYNC, error="Realtime channel not connected")
        else:
            self._set_state(SyncPhase.SYNCHRONIZED)
        return result

    def _channel_down(self) -> bool:
        """Check if the live phase has a channel that is not connected."""
        channel = self._channel
        return channel is not None and not channel.connected

    # ------------------------------------------------------------------
    # Event handlers (worker pool)
    # ------------------------------------------------------------------

    def _apply_remote(self, event: SyncEvent) -> None:
        """Apply a change pushed by the server to the local tree.

        Never uploads: the change came from the server.
        """
        assert self._root is not None and self._ignore is not None
        path = event.path
        record = event.record
        is_dir = record.is_directory if record is not None else False
        if self._ignore.matches(path, is_dir):
            logger.debug("Ignoring remote change for ignored path %s", path)
            return

        local_path = resolve_local_path(self._root, path)
        with self._locks.hold(path):
            if event.event_type == SyncEventType.REMOTE_DELETED:
                self._remove_local(path, local_path)
                return

            if record is None:
                return
            if record.is_directory:
                with self._suppressor.suppress(path):
                    local_path.mkdir(parents=True, exist_ok=True)
                return
            if (
                record.content_hash is not None
                and local_path.is_file()
                and compute_file_hash(local_path) == record.content_hash
            ):
                logger.debug("Remote change for %s already present locally", path)
                return

            logger.info("Downloading %s (remote %s)", path, event.event_type.name.lower())
            with self._suppressor.suppress(path):
                self._client.download_file(path, local_path)

    def _remove_local(self, path: str, local_path: Path) -> None:
        with self._suppressor.suppress(path):
            if local_path.is_dir():
                try:
                    local_path.rmdir()
                except OSError:
                    logger.info("Keeping non-empty directory %s deleted remotely", path)
                    return
            elif local_path.exists():
                local_path.unlink()
            else:
                return
        logger.info("Removed %s (deleted remotely)", path)

    def _apply_local(self, event: SyncEvent) -> None:
        """Propagate a local change to the server."""
        assert self._root is not None
        path = event.path
        local_path = resolve_local_path(self._root, path)

        with self._locks.hold(path):
            if event.event_type == SyncEventType.LOCAL_DELETED:
                if local_path.exists():
                    logger.debug("%s was recreated, skipping delete", path)
                    return
                logger.info("Deleting %s on server", path)
                self._client.delete_file(path)
                self._notify_channel(ChangeEvent.deleted(path))
                return

            if not local_path.is_file():
                return
            local = LocalFile.from_path(local_path, self._root)

            try:
                remote = self._client.get_file_metadata(path)
            except NotFoundError:
                remote = None
            except APIError as e:
                if self._settings.metadata_failure_policy is MetadataFailurePolicy.SKIP:
                    logger.warning("Metadata lookup for %s failed, skipping: %s", path, e)
                    self._report(SyncErrorReport("metadata", str(e), path))
                    return
                logger.warning("Metadata lookup for %s failed, uploading anyway: %s", path, e)
                remote = None
            else:
                if remote.content_hash == local.content_hash:
                    logger.debug("%s unchanged on server, skipping upload", path)
                    return

            logger.info("Uploading %s (local %s)", path, event.event_type.name.lower())
            self._client.upload_file(path, local_path)
            kind = ChangeKind.CREATED if remote is None else ChangeKind.UPDATED
            self._notify_channel(ChangeEvent(kind, local.to_record()))

    def _notify_channel(self, change: ChangeEvent) -> None:
        """Tell other clients about a local change, best-effort."""
        channel = self._channel
        if channel is not None:
            channel.send(change)

    # ------------------------------------------------------------------
    # Channel callbacks (channel thread; only enqueue or update state)
    # ------------------------------------------------------------------

    def _on_remote_change(self, change: ChangeEvent) -> None:
        self._enqueue(
            SyncEvent.create(
                _REMOTE_EVENT_TYPES[change.kind],
                change.path,
                SyncEventSource.REMOTE,
                record=change.record,
            )
        )

    def _on_channel_connected(self) -> None:
        self.request_resync("channel connected")

    def _on_channel_disconnected(self, reason: str) -> None:
        self._set_state(SyncPhase.OUT_OF_SYNC, error=f"Realtime channel lost: {reason}")

    def _on_channel_gave_up(self, error: str) -> None:
        message = f"Realtime channel gave up: {error}"
        self._set_state(SyncPhase.OUT_OF_SYNC, error=message)
        self._report(SyncErrorReport("connect", error))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enqueue(self, event: SyncEvent) -> None:
        try:
            self._queue.put(event)
        except RuntimeError:
            logger.debug("Queue closed, dropping %s", event)

    def _set_state(self, phase: SyncPhase, error: str | None = None) -> None:
        """Transition the state machine and notify the owner."""
        with self._state_lock:
            previous = replace(self._state)
            self._state.phase = phase
            if phase == SyncPhase.SYNCHRONIZED:
                self._state.last_synced_at = datetime.now(UTC)
                self._state.last_error = None
            elif error is not None:
                self._state.last_error = error
            snapshot = replace(self._state)

        if snapshot == previous:
            return
        if snapshot.phase != previous.phase:
            logger.info("Sync state: %s -> %s", previous.phase.value, snapshot.phase.value)
        if self._on_state_change:
            try:
                self._on_state_change(snapshot)
            except Exception:
                logger.exception("State callback failed")

    def _report(self, report: SyncErrorReport) -> None:
        if self._on_error:
            try:
                self._on_error(report)
            except Exception:
                logger.exception("Error callback failed")

    def _default_channel(self, **callbacks: Callable[..., None]) -> RealtimeChannel:
        return RealtimeChannel(
            self._client.config,
            max_attempts=self._settings.max_reconnect_attempts,
            initial_delay=self._settings.initial_reconnect_delay,
            max_delay=self._settings.max_reconnect_delay,
            **callbacks,  # type: ignore[arg-type]
        )

    def _default_watcher(
        self, root: Path, queue: EventQueue, suppressor: WriteSuppressor
    ) -> FileWatcher:
        return FileWatcher(
            root,
            queue,
            suppressor=suppressor,
            debounce_ms=self._settings.debounce_ms,
            ignore_patterns=self._settings.ignore_patterns,
        )
