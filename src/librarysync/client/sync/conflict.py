"""Conflict decision port and resolution.

This module provides:
- ConflictDecider: Protocol for anything that can decide a conflict
- PolicyDecider, CallbackDecider, PendingDecisions: Decider implementations
- ConflictResolver: Awaits a decision and applies it
- generate_conflict_filename: Name of the "keep both" copy

The engine never talks to a UI directly. It emits a ConflictInfo to a
decider and waits on the returned Future; a CLI prompt, a GUI dialog or a
fixed policy can sit behind the port.
"""

from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Callable
from concurrent.futures import CancelledError, Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from librarysync.client.sync.scanner import resolve_local_path
from librarysync.client.sync.types import (
    ConflictInfo,
    ConflictOutcome,
    ConflictResolution,
    ConflictUnresolvedError,
)

if TYPE_CHECKING:
    from librarysync.client.api import HTTPClient
    from librarysync.client.sync.watcher import WriteSuppressor

logger = logging.getLogger(__name__)

CONFLICT_MARKER = "conflict"
CONFLICT_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def generate_conflict_filename(original_path: Path, now: datetime | None = None) -> Path:
    """Generate the conflict copy path for a file.

    Format: <stem>.conflict.<YYYYMMDDHHMMSS><ext>, e.g.
    notes/c.md -> notes/c.conflict.20250101120000.md. If the name is already
    taken a numeric suffix is added to the stem.

    Args:
        original_path: Path of the conflicting file.
        now: Timestamp to embed (defaults to the current local time).
    """
    now = now or datetime.now()
    stamp = now.strftime(CONFLICT_TIMESTAMP_FORMAT)
    stem = original_path.stem
    suffix = original_path.suffix

    candidate = original_path.with_name(f"{stem}.{CONFLICT_MARKER}.{stamp}{suffix}")
    counter = 1
    while candidate.exists():
        candidate = original_path.with_name(
            f"{stem}.{CONFLICT_MARKER}.{stamp}-{counter}{suffix}"
        )
        counter += 1
    return candidate


class ConflictDecider(Protocol):
    """Port through which the engine asks for a conflict decision."""

    def request(self, info: ConflictInfo) -> Future[ConflictResolution]:
        """Ask for a decision; the future resolves to the chosen resolution."""
        ...


class PolicyDecider:
    """Always answers with the same resolution."""

    def __init__(self, resolution: ConflictResolution) -> None:
        self.resolution = resolution

    def request(self, info: ConflictInfo) -> Future[ConflictResolution]:
        future: Future[ConflictResolution] = Future()
        future.set_result(self.resolution)
        return future


class CallbackDecider:
    """Runs a synchronous callable (e.g. an interactive prompt) for each conflict.

    Calls are serialized so that interactive prompts never interleave.
    """

    def __init__(self, callback: Callable[[ConflictInfo], ConflictResolution]) -> None:
        self._callback = callback
        self._lock = threading.Lock()

    def request(self, info: ConflictInfo) -> Future[ConflictResolution]:
        future: Future[ConflictResolution] = Future()
        future.set_running_or_notify_cancel()
        try:
            with self._lock:
                future.set_result(self._callback(info))
        except Exception as e:
            future.set_exception(e)
        return future


class PendingDecisions:
    """Holds conflict requests until a front end answers them.

    Usage:
        decisions = PendingDecisions(on_request=show_dialog)
        ...
        decisions.answer("notes/a.md", ConflictResolution.KEEP_BOTH)
    """

    def __init__(self, on_request: Callable[[ConflictInfo], None] | None = None) -> None:
        self._on_request = on_request
        self._lock = threading.Lock()
        self._pending: dict[str, tuple[ConflictInfo, Future[ConflictResolution]]] = {}

    def request(self, info: ConflictInfo) -> Future[ConflictResolution]:
        future: Future[ConflictResolution] = Future()
        with self._lock:
            previous = self._pending.get(info.relative_path)
            if previous is not None:
                previous[1].cancel()
            self._pending[info.relative_path] = (info, future)
        if self._on_request:
            self._on_request(info)
        return future

    def pending(self) -> list[ConflictInfo]:
        """Conflicts still waiting for an answer."""
        with self._lock:
            return [info for info, _ in self._pending.values()]

    def answer(self, path: str, resolution: ConflictResolution) -> bool:
        """Answer the conflict for a path.

        Returns:
            False if no conflict is pending for the path.
        """
        with self._lock:
            entry = self._pending.pop(path, None)
        if entry is None:
            return False
        entry[1].set_result(resolution)
        return True

    def cancel_all(self) -> None:
        """Abandon every pending request."""
        with self._lock:
            entries = list(self._pending.values())
            self._pending.clear()
        for _, future in entries:
            future.cancel()


class ConflictResolver:
    """Obtains a decision for a conflict and applies it.

    Only the calling worker blocks on the decision; other files keep being
    processed by the remaining workers.
    """

    def __init__(
        self,
        client: HTTPClient,
        base_path: Path,
        decider: ConflictDecider,
        suppressor: WriteSuppressor,
        decision_timeout: float | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the resolver.

        Args:
            client: Transfer client used to apply the resolution.
            base_path: Library root.
            decider: Decision port.
            suppressor: Watcher suppression for local writes.
            decision_timeout: Seconds to wait for a decision (None = forever).
            clock: Source of the conflict copy timestamp.
        """
        self._client = client
        self._base_path = base_path
        self._decider = decider
        self._suppressor = suppressor
        self._decision_timeout = decision_timeout
        self._clock = clock

    def decide(self, info: ConflictInfo) -> ConflictResolution:
        """Wait for the decider's answer.

        Raises:
            ConflictUnresolvedError: Timeout, cancellation or decider failure.
        """
        logger.warning(
            "Conflict on %s (local %s, %d bytes / remote %s, %d bytes)",
            info.relative_path,
            info.local_modified,
            info.local_size,
            info.remote_modified,
            info.remote_size,
        )
        future = self._decider.request(info)
        try:
            resolution = future.result(timeout=self._decision_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise ConflictUnresolvedError(info.relative_path, "no decision in time") from None
        except CancelledError:
            raise ConflictUnresolvedError(info.relative_path, "decision cancelled") from None
        except Exception as e:
            raise ConflictUnresolvedError(info.relative_path, str(e) or type(e).__name__) from e
        return ConflictResolution(resolution)

    def resolve(self, info: ConflictInfo) -> ConflictOutcome:
        """Decide and apply a conflict resolution.

        The caller must hold the path lock.

        Raises:
            ConflictUnresolvedError: No decision obtained; nothing changed.
            APIError, OSError: Applying the resolution failed.
        """
        resolution = self.decide(info)
        return self.apply(info, resolution)

    def apply(self, info: ConflictInfo, resolution: ConflictResolution) -> ConflictOutcome:
        """Apply a resolution to the local file and the server."""
        path = info.relative_path
        local_path = resolve_local_path(self._base_path, path)
        logger.info("Resolving %s with %s", path, resolution.value)

        if resolution is ConflictResolution.KEEP_LOCAL:
            self._client.upload_file(path, local_path)
            return ConflictOutcome(path=path, resolution=resolution)

        if resolution is ConflictResolution.KEEP_REMOTE:
            with self._suppressor.suppress(path):
                self._client.download_file(path, local_path)
            return ConflictOutcome(path=path, resolution=resolution)

        conflict_path = generate_conflict_filename(local_path, self._clock())
        conflict_rel = conflict_path.relative_to(self._base_path).as_posix()
        with self._suppressor.suppress(path, conflict_rel):
            shutil.copy2(local_path, conflict_path)
            logger.info("Created conflict copy: %s", conflict_rel)
            self._client.download_file(path, local_path)
        # The copy is a new local file; send it so both versions reach the server
        self._client.upload_file(conflict_rel, conflict_path)
        return ConflictOutcome(path=path, resolution=resolution, conflict_copy=conflict_path)
