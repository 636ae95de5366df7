"""Configuration classes for librarysync.

This module defines the connection settings (ServerConfig) and the engine
tunables for one library root (SyncSettings).
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class MetadataFailurePolicy(str, Enum):
    """What to do with a changed local file when its remote metadata lookup fails."""

    UPLOAD = "upload"
    SKIP = "skip"


@dataclass
class ServerConfig:
    """Configuration for connecting to a library server.

    Used by both the HTTP client (HTTPClient) and the realtime channel
    (RealtimeChannel) to ensure consistent connection settings.

    Attributes:
        server_url: Base URL of the server (e.g., "https://library.example.com").
        username: Account name for HTTP Basic authentication.
        password: Account password.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    username: str = ""
    password: str = ""
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL of the change channel."""
        url = self.server_url
        if url.startswith("https://"):
            url = "wss://" + url[8:]
        elif url.startswith("http://"):
            url = "ws://" + url[7:]
        return f"{url}/api/changes"

    @property
    def auth(self) -> tuple[str, str]:
        """Credentials tuple for httpx."""
        return (self.username, self.password)

    @property
    def authorization_header(self) -> str:
        """HTTP Basic Authorization header value."""
        raw = f"{self.username}:{self.password}".encode()
        return "Basic " + base64.b64encode(raw).decode("ascii")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS/WSS."""
        return self.server_url.startswith("https://")


@dataclass
class SyncSettings:
    """Engine settings for one library root.

    Attributes:
        library_root: Local directory kept in sync. None or empty means
            "do not start".
        conflict_window: Seconds within which differing files are treated as
            a conflict rather than ordered by timestamp.
        max_workers: Concurrent transfers during reconciliation.
        max_reconnect_attempts: Channel reconnects before giving up.
        initial_reconnect_delay: First backoff delay in seconds.
        max_reconnect_delay: Backoff cap in seconds.
        suppression_grace: Seconds watcher events are still ignored after an
            engine-initiated write finishes.
        debounce_ms: Watcher debounce window.
        decision_timeout: Seconds to wait for a conflict decision (None = forever).
        metadata_failure_policy: Action when a metadata lookup fails for a
            locally changed file.
        ignore_patterns: Extra ignore patterns.
        max_sync_retries: Retries of a full reconciliation on network errors.
    """

    library_root: Path | None
    conflict_window: float = 2.0
    max_workers: int = 4
    max_reconnect_attempts: int = 10
    initial_reconnect_delay: float = 1.0
    max_reconnect_delay: float = 30.0
    suppression_grace: float = 1.0
    debounce_ms: int = 250
    decision_timeout: float | None = None
    metadata_failure_policy: MetadataFailurePolicy = MetadataFailurePolicy.UPLOAD
    ignore_patterns: list[str] = field(default_factory=list)
    max_sync_retries: int = 3

    def __post_init__(self) -> None:
        """Coerce the root to a Path and validate tunables."""
        if isinstance(self.library_root, str):
            self.library_root = Path(self.library_root) if self.library_root.strip() else None
        if self.library_root is not None:
            self.library_root = self.library_root.expanduser()
        if self.conflict_window < 0:
            raise ValueError("conflict_window must be >= 0")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if self.max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be >= 1")
        self.metadata_failure_policy = MetadataFailurePolicy(self.metadata_failure_policy)

    @property
    def is_configured(self) -> bool:
        """Check whether a library root is set."""
        return self.library_root is not None
