"""Shared fixtures for client tests."""

from __future__ import annotations

import hashlib
import os
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from librarysync.client.api import DownloadResult, NotFoundError, UploadResult
from librarysync.core.config import ServerConfig
from librarysync.core.types import FileRecord


class FakeLibraryServer:
    """In-memory stand-in for HTTPClient backed by a dict of files.

    Uploads store the local bytes with the local mtime; downloads write the
    stored bytes and stamp the remote mtime on the local file.
    """

    def __init__(self) -> None:
        self.config = ServerConfig(server_url="http://test", username="ann", password="pw")
        self.files: dict[str, tuple[bytes, datetime | None]] = {}
        self.directories: set[str] = set()
        self.uploads: list[str] = []
        self.downloads: list[str] = []
        self.deletes: list[str] = []
        self.catalog_error: Exception | None = None
        self.fail_paths: dict[str, Exception] = {}
        self._lock = threading.Lock()

    def put(self, path: str, content: bytes, modified: datetime | None) -> None:
        """Place a file on the server."""
        self.files[path] = (content, modified)

    def record(self, path: str) -> FileRecord:
        if path in self.directories:
            return FileRecord(path, is_directory=True)
        content, modified = self.files[path]
        return FileRecord(
            path,
            size=len(content),
            modified_time=modified,
            content_hash=hashlib.sha256(content).hexdigest(),
        )

    def fetch_catalog(self) -> list[FileRecord]:
        if self.catalog_error is not None:
            raise self.catalog_error
        return [self.record(p) for p in sorted(self.directories | set(self.files))]

    def get_file_metadata(self, relative_path: str) -> FileRecord:
        if relative_path not in self.files and relative_path not in self.directories:
            raise NotFoundError(f"{relative_path} not found", status_code=404)
        return self.record(relative_path)

    def upload_file(self, relative_path: str, local_path: Path) -> UploadResult:
        if relative_path in self.fail_paths:
            raise self.fail_paths[relative_path]
        content = local_path.read_bytes()
        modified = datetime.fromtimestamp(local_path.stat().st_mtime, tz=UTC)
        with self._lock:
            self.files[relative_path] = (content, modified)
            self.uploads.append(relative_path)
        return UploadResult(
            path=relative_path,
            size=len(content),
            content_hash=hashlib.sha256(content).hexdigest(),
        )

    def download_file(self, relative_path: str, local_path: Path) -> DownloadResult:
        if relative_path in self.fail_paths:
            raise self.fail_paths[relative_path]
        if relative_path not in self.files:
            raise NotFoundError(f"{relative_path} not found", status_code=404)
        content, modified = self.files[relative_path]
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(content)
        if modified is not None:
            os.utime(local_path, (modified.timestamp(), modified.timestamp()))
        with self._lock:
            self.downloads.append(relative_path)
        return DownloadResult(path=relative_path, local_path=local_path, size=len(content))

    def delete_file(self, relative_path: str) -> None:
        with self._lock:
            self.files.pop(relative_path, None)
            self.deletes.append(relative_path)


@pytest.fixture
def server() -> FakeLibraryServer:
    """Create an empty fake server."""
    return FakeLibraryServer()


@pytest.fixture
def library(tmp_path: Path) -> Path:
    """Create an empty library root."""
    root = tmp_path / "library"
    root.mkdir()
    return root


@pytest.fixture
def make_file(library: Path) -> Callable[[str, bytes, datetime], Path]:
    """Write a library file with a fixed modification time."""

    def _make(rel_path: str, content: bytes, modified: datetime) -> Path:
        path = library / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        os.utime(path, (modified.timestamp(), modified.timestamp()))
        return path

    return _make
