"""Per-path exclusivity for file-mutating operations.

Reconciliation workers, remote-change application and local-change uploads
all take the lock of the path they touch, so no two operations on the same
path run at the same time. Operations on different paths are independent.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class PathLocks:
    """Lazily created, reference-counted lock per relative path."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, path: str) -> Iterator[None]:
        """Hold the lock for a path for the duration of the block."""
        with self._guard:
            lock = self._locks.setdefault(path, threading.Lock())
            self._users[path] = self._users.get(path, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[path] -= 1
                if self._users[path] == 0:
                    del self._users[path]
                    del self._locks[path]

    def is_held(self, path: str) -> bool:
        """Check whether any operation currently holds or waits on a path."""
        with self._guard:
            return path in self._users
