"""HTTP client for the library server API.

This module provides:
- HTTPClient: HTTP client for communicating with the server
- Catalog fetch and per-file metadata lookup
- Upload, download (atomic write) and idempotent delete
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from librarysync.core.config import ServerConfig
from librarysync.core.hashing import compute_file_hash
from librarysync.core.types import FileRecord, normalize_path

logger = logging.getLogger(__name__)

TEMP_PREFIX = ".librarysync-"
TEMP_SUFFIX = ".part"


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkError(APIError):
    """Connection failure or timeout (transient)."""


class ProtocolError(APIError):
    """Malformed or unexpected server response."""


class AuthenticationError(APIError):
    """Authentication failed."""


class NotFoundError(APIError):
    """Resource not found."""


@dataclass
class UploadResult:
    """Result of a file upload operation."""

    path: str
    size: int
    content_hash: str


@dataclass
class DownloadResult:
    """Result of a file download operation."""

    path: str
    local_path: Path
    size: int


def encode_path(relative_path: str) -> str:
    """URL-quote each segment of a relative path."""
    return "/".join(quote(part, safe="") for part in normalize_path(relative_path).split("/"))


class HTTPClient:
    """HTTP client for the library server API."""

    def __init__(
        self,
        config: ServerConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the HTTP client.

        Args:
            config: Server configuration (URL, credentials, timeout, SSL).
            transport: Optional custom transport (tests).
        """
        self._config = config
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            auth=config.auth,
            verify=config.verify_ssl,
            transport=transport,
        )

    @property
    def config(self) -> ServerConfig:
        """Get the server configuration."""
        return self._config

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> HTTPClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport failures to NetworkError."""
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {url} failed: {e}") from e
        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError("Invalid credentials", status)
        if status == 404:
            raise NotFoundError("Resource not found", 404)
        if status >= 500:
            raise ProtocolError(f"Server error {status}", status)
        if status >= 400:
            raise APIError(self._error_detail(response), status)
        return response

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        """Extract an error message from a response body."""
        try:
            data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return str(data.get("detail") or data.get("error") or data)
        return str(data)

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        """Decode a JSON body or raise ProtocolError."""
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"Invalid JSON from server: {e}", response.status_code) from e

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is reachable and healthy."""
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Catalog ===

    def fetch_catalog(self) -> list[FileRecord]:
        """Fetch the authoritative remote listing.

        Accepts a JSON list, or an object holding the list under "files"
        (or under an empty key, as older servers send it).

        Returns:
            List of file records. Entries without a path are dropped.

        Raises:
            NetworkError: Connection failure.
            ProtocolError: Malformed response.
        """
        response = self._request("GET", "/api/files")
        data = self._json(response)

        if isinstance(data, dict):
            entries = data.get("files", data.get(""))
        else:
            entries = data
        if not isinstance(entries, list):
            raise ProtocolError("Catalog response is not a list of files")

        records: list[FileRecord] = []
        for entry in entries:
            if isinstance(entry, dict) and not entry.get("path"):
                logger.warning("Catalog entry without path skipped: %s", entry.get("name"))
                continue
            try:
                records.append(FileRecord.from_dict(entry))
            except ValueError as e:
                raise ProtocolError(f"Malformed catalog entry: {e}") from e

        logger.debug("Fetched catalog with %d entries", len(records))
        return records

    def get_file_metadata(self, relative_path: str) -> FileRecord:
        """Get metadata for a single remote file.

        Raises:
            NotFoundError: If the file does not exist remotely.
            ProtocolError: Malformed response.
        """
        response = self._request("GET", f"/api/metadata/{encode_path(relative_path)}")
        data = self._json(response)
        try:
            return FileRecord.from_dict(data)
        except ValueError as e:
            raise ProtocolError(f"Malformed metadata for {relative_path}: {e}") from e

    # === Transfers ===

    def upload_file(self, relative_path: str, local_path: Path) -> UploadResult:
        """Upload a local file.

        The content hash is computed first and sent alongside the bytes so
        that re-uploading identical content is a no-op server-side.

        Args:
            relative_path: Path relative to the library root.
            local_path: Absolute path of the local file.

        Raises:
            OSError: If the local file cannot be read.
            NetworkError, ProtocolError, APIError: On server failure.
        """
        path = normalize_path(relative_path)
        content_hash = compute_file_hash(local_path)
        size = local_path.stat().st_size

        with open(local_path, "rb") as f:
            self._request(
                "POST",
                "/api/files",
                files={"file": (local_path.name, f, "application/octet-stream")},
                data={"relativePath": path, "hash": content_hash},
            )

        logger.info("Uploaded %s (%d bytes)", path, size)
        return UploadResult(path=path, size=size, content_hash=content_hash)

    def fetch_content(self, relative_path: str) -> bytes:
        """Fetch the raw content of a remote file."""
        response = self._request("GET", f"/api/files/{encode_path(relative_path)}")
        return response.content

    def download_file(self, relative_path: str, local_path: Path) -> DownloadResult:
        """Download a remote file and write it atomically.

        The body is streamed into a temporary file in the destination
        directory which then replaces the target, so readers never observe
        a partially written file.

        Raises:
            NotFoundError: If the file does not exist remotely.
            NetworkError, ProtocolError: On transfer failure.
            OSError: If the local write fails.
        """
        path = normalize_path(relative_path)
        url = f"/api/files/{encode_path(path)}"
        local_path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=local_path.parent
        )
        tmp_path = Path(tmp_name)
        size = 0
        try:
            with os.fdopen(fd, "wb") as f:
                try:
                    with self._client.stream("GET", url) as response:
                        if response.status_code >= 400:
                            response.read()
                        self._handle_response(response)
                        for block in response.iter_bytes():
                            f.write(block)
                            size += len(block)
                except httpx.TransportError as e:
                    raise NetworkError(f"GET {url} failed: {e}") from e
            os.replace(tmp_path, local_path)
        except BaseException:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise

        logger.info("Downloaded %s (%d bytes)", path, size)
        return DownloadResult(path=path, local_path=local_path, size=size)

    def delete_file(self, relative_path: str) -> None:
        """Delete a remote file.

        Deleting an already-absent file is not an error.
        """
        path = normalize_path(relative_path)
        try:
            self._request("DELETE", f"/api/files/{encode_path(path)}")
        except NotFoundError:
            logger.debug("Delete of absent remote file %s ignored", path)
            return
        logger.info("Deleted remote %s", path)
