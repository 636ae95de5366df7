"""Full reconciliation between the library root and the server catalog.

This module provides:
- plan: Pure comparison of local and remote state into SyncActions
- Reconciler: Scans, fetches the catalog, plans and executes a pass

Decision rules for a path:
    | Local | Remote    | Condition                      | Action           |
    |-------|-----------|--------------------------------|------------------|
    | file  | -         |                                | UPLOAD           |
    | -     | directory |                                | CREATE_DIRECTORY |
    | -     | file      |                                | DOWNLOAD         |
    | file  | file      | hashes equal                   | NONE             |
    | file  | file      | |mtime delta| <= window        | CONFLICT         |
    | file  | file      | local newer                    | UPLOAD           |
    | file  | file      | remote newer                   | DOWNLOAD         |
    | file  | file      | no usable timestamp            | CONFLICT         |
    | file  | directory |                                | INVALID          |

The hash is the equality authority; timestamps only pick a direction.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import TYPE_CHECKING

from librarysync.client.api import APIError
from librarysync.client.sync.ignore import IgnorePatterns
from librarysync.client.sync.scanner import LocalFile, resolve_local_path, scan_library
from librarysync.client.sync.types import (
    ActionType,
    ConflictInfo,
    ErrorCallback,
    SyncAction,
    SyncError,
    SyncErrorReport,
    SyncResult,
)

if TYPE_CHECKING:
    from librarysync.client.api import HTTPClient
    from librarysync.client.sync.conflict import ConflictResolver
    from librarysync.client.sync.locks import PathLocks
    from librarysync.client.sync.watcher import WriteSuppressor
    from librarysync.core.types import FileRecord

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_WINDOW = 2.0  # seconds


def _compare(local: LocalFile, remote: FileRecord, conflict_window: float) -> SyncAction:
    """Decide the action for a path present on both sides."""
    path = local.relative_path
    if remote.is_directory:
        return SyncAction(path, ActionType.INVALID, local, remote, "local file, remote directory")

    try:
        local_hash = local.content_hash
    except OSError as e:
        return SyncAction(path, ActionType.INVALID, local, remote, f"unreadable: {e}")

    # Hash first: identical content never transfers, whatever the clocks say
    if remote.content_hash is not None and local_hash == remote.content_hash:
        return SyncAction(path, ActionType.NONE, local, remote, "identical content")

    if remote.modified_time is None:
        return SyncAction(path, ActionType.CONFLICT, local, remote, "remote time unknown")

    delta = (local.modified_time - remote.modified_time).total_seconds()
    if abs(delta) <= conflict_window:
        return SyncAction(path, ActionType.CONFLICT, local, remote, "modified on both sides")
    if delta > 0:
        return SyncAction(path, ActionType.UPLOAD, local, remote, "local newer")
    return SyncAction(path, ActionType.DOWNLOAD, local, remote, "remote newer")


def plan(
    local: Mapping[str, LocalFile],
    remote: Mapping[str, FileRecord],
    conflict_window: float = DEFAULT_CONFLICT_WINDOW,
) -> list[SyncAction]:
    """Compare local and remote state.

    Hashes are only computed for paths present on both sides.

    Args:
        local: Local files by relative path.
        remote: Remote records by relative path.
        conflict_window: Timestamps closer than this many seconds are
            treated as concurrent edits.

    Returns:
        One SyncAction per path, in sorted path order.
    """
    actions: list[SyncAction] = []
    for path in sorted(set(local) | set(remote)):
        local_file = local.get(path)
        remote_record = remote.get(path)

        if remote_record is None:
            assert local_file is not None
            actions.append(SyncAction(path, ActionType.UPLOAD, local_file, None, "local only"))
        elif local_file is None:
            if remote_record.is_directory:
                actions.append(
                    SyncAction(path, ActionType.CREATE_DIRECTORY, None, remote_record, "remote only")
                )
            else:
                actions.append(
                    SyncAction(path, ActionType.DOWNLOAD, None, remote_record, "remote only")
                )
        else:
            actions.append(_compare(local_file, remote_record, conflict_window))
    return actions


class Reconciler:
    """Runs full reconciliation passes for one library root.

    Only one pass runs at a time; a second caller blocks until the first
    finishes. Actions run on a bounded thread pool, each holding the lock of
    its path.
    """

    def __init__(
        self,
        client: HTTPClient,
        base_path: Path,
        resolver: ConflictResolver,
        locks: PathLocks,
        suppressor: WriteSuppressor,
        ignore: IgnorePatterns | None = None,
        conflict_window: float = DEFAULT_CONFLICT_WINDOW,
        max_workers: int = 4,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            client: Transfer client.
            base_path: Library root.
            resolver: Conflict resolver.
            locks: Per-path locks shared with the coordinator.
            suppressor: Watcher suppression for local writes.
            ignore: Ignore patterns (defaults plus .syncignore).
            conflict_window: Concurrent-edit window in seconds.
            max_workers: Size of the transfer pool.
            on_error: Called for every per-file failure.
        """
        self._client = client
        self._base_path = Path(base_path)
        self._resolver = resolver
        self._locks = locks
        self._suppressor = suppressor
        self._ignore = ignore or IgnorePatterns.for_root(self._base_path)
        self._conflict_window = conflict_window
        self._max_workers = max_workers
        self._on_error = on_error

        self._run_lock = threading.Lock()
        self._result_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        """Check if a pass is in progress."""
        return self._run_lock.locked()

    def run(self, cancel_event: threading.Event | None = None) -> SyncResult:
        """Run one reconciliation pass.

        Args:
            cancel_event: When set, no further actions are started.

        Returns:
            SyncResult with per-path outcomes and per-file errors.

        Raises:
            NetworkError, ProtocolError, AuthenticationError: The catalog
                could not be fetched; nothing was changed.
        """
        cancel_event = cancel_event or threading.Event()
        with self._run_lock:
            logger.info("Reconciling %s", self._base_path)
            self._base_path.mkdir(parents=True, exist_ok=True)
            local = scan_library(self._base_path, self._ignore)
            remote = {
                record.relative_path: record
                for record in self._client.fetch_catalog()
                if not self._ignore.matches(record.relative_path, record.is_directory)
            }
            actions = plan(local, remote, self._conflict_window)
            result = self._execute(actions, cancel_event)
            logger.info(
                "Reconciliation done: %d uploaded, %d downloaded, %d conflicts, %d errors",
                len(result.uploaded),
                len(result.downloaded),
                len(result.conflicts),
                len(result.errors),
            )
            return result

    def _execute(self, actions: list[SyncAction], cancel_event: threading.Event) -> SyncResult:
        """Execute planned actions on the worker pool."""
        result = SyncResult()
        pending: list[SyncAction] = []
        for action in actions:
            if action.action == ActionType.NONE:
                result.unchanged.append(action.path)
            elif action.action == ActionType.INVALID:
                self._report(result, "reconcile", SyncError(action.reason), action.path)
            else:
                pending.append(action)

        if not pending:
            return result

        logger.debug("Executing %d actions with %d workers", len(pending), self._max_workers)
        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="reconcile"
        ) as executor:
            futures = {}
            for action in pending:
                if cancel_event.is_set():
                    result.cancelled = True
                    break
                futures[executor.submit(self._run_action, action, result, cancel_event)] = action

            for future in as_completed(futures):
                action = futures[future]
                try:
                    future.result()
                except Exception as e:
                    logger.exception("Unexpected error syncing %s", action.path)
                    self._report(result, action.action.name.lower(), e, action.path)

        if cancel_event.is_set():
            result.cancelled = True
        return result

    def _run_action(
        self, action: SyncAction, result: SyncResult, cancel_event: threading.Event
    ) -> None:
        """Execute one action, recording its outcome."""
        if cancel_event.is_set():
            return

        path = action.path
        operation = action.action.name.lower()
        try:
            with self._locks.hold(path):
                if action.action == ActionType.UPLOAD:
                    assert action.local is not None
                    logger.info("Uploading %s (%s)", path, action.reason)
                    self._client.upload_file(path, action.local.path)
                    self._record(result.uploaded, path)
                elif action.action == ActionType.DOWNLOAD:
                    local_path = resolve_local_path(self._base_path, path)
                    logger.info("Downloading %s (%s)", path, action.reason)
                    with self._suppressor.suppress(path):
                        self._client.download_file(path, local_path)
                    self._record(result.downloaded, path)
                elif action.action == ActionType.CREATE_DIRECTORY:
                    local_path = resolve_local_path(self._base_path, path)
                    with self._suppressor.suppress(path):
                        local_path.mkdir(parents=True, exist_ok=True)
                    self._record(result.created_dirs, path)
                elif action.action == ActionType.CONFLICT:
                    self._resolver.resolve(self._conflict_info(action))
                    self._record(result.conflicts, path)
        except (APIError, SyncError, OSError) as e:
            logger.warning("Failed to %s %s: %s", operation, path, e)
            self._report(result, operation, e, path)

    @staticmethod
    def _conflict_info(action: SyncAction) -> ConflictInfo:
        assert action.local is not None and action.remote is not None
        return ConflictInfo(
            relative_path=action.path,
            local_modified=action.local.modified_time,
            remote_modified=action.remote.modified_time,
            local_size=action.local.size,
            remote_size=action.remote.size,
            local_hash=action.local.content_hash,
            remote_hash=action.remote.content_hash,
        )

    def _record(self, bucket: list[str], path: str) -> None:
        with self._result_lock:
            bucket.append(path)

    def _report(
        self, result: SyncResult, operation: str, error: Exception, path: str | None
    ) -> None:
        report = SyncErrorReport(operation=operation, error=str(error), path=path)
        with self._result_lock:
            result.errors.append(report)
        if self._on_error:
            try:
                self._on_error(report)
            except Exception:
                logger.exception("Error callback failed")
