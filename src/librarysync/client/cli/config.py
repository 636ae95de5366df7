"""Configuration utilities for the librarysync CLI.

This module provides shared configuration functions used across CLI commands.
Settings live in ~/.librarysync/config.json as a flat JSON object.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from librarysync.core.config import MetadataFailurePolicy, ServerConfig, SyncSettings

# Keys accepted by `librarysync config set`, with their value types
CONFIG_KEYS: dict[str, type] = {
    "server_url": str,
    "username": str,
    "password": str,
    "library_root": str,
    "verify_ssl": bool,
    "timeout": float,
    "conflict_window": float,
    "max_workers": int,
    "decision_timeout": float,
    "metadata_failure_policy": str,
    "ignore_patterns": list,
}

SECRET_KEYS = frozenset({"password"})

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def get_config_dir() -> Path:
    """Get the configuration directory for librarysync.

    Returns:
        Path to ~/.librarysync or equivalent.
    """
    return Path.home() / ".librarysync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_library_root(config: dict[str, Any] | None = None) -> Path | None:
    """Get the configured library root.

    Returns:
        Resolved path, or None if no root is configured.
    """
    if config is None:
        config = load_config()
    root = str(config.get("library_root") or "").strip()
    if not root:
        return None
    return Path(root).expanduser().resolve()


def parse_config_value(key: str, raw: str) -> Any:
    """Convert a command-line value to the type stored for a key.

    Raises:
        KeyError: Unknown key.
        ValueError: Value cannot be converted.
    """
    value_type = CONFIG_KEYS[key]
    if value_type is bool:
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"Expected a boolean for {key}, got {raw!r}")
    if value_type is list:
        return [part.strip() for part in raw.split(",") if part.strip()]
    if key == "metadata_failure_policy":
        return MetadataFailurePolicy(raw.strip().lower()).value
    return value_type(raw)


def build_server_config(config: dict[str, Any]) -> ServerConfig:
    """Build the server connection settings.

    Raises:
        ValueError: If no server URL is configured.
    """
    server_url = str(config.get("server_url") or "").strip()
    if not server_url:
        raise ValueError("No server configured. Run 'librarysync config set server_url URL'.")
    return ServerConfig(
        server_url=server_url,
        username=str(config.get("username", "")),
        password=str(config.get("password", "")),
        timeout=float(config.get("timeout", 30.0)),
        verify_ssl=bool(config.get("verify_ssl", True)),
    )


def build_sync_settings(config: dict[str, Any]) -> SyncSettings:
    """Build the engine settings for the configured library root.

    Raises:
        ValueError: If a tunable is out of range.
    """
    decision_timeout = config.get("decision_timeout")
    return SyncSettings(
        library_root=get_library_root(config),
        conflict_window=float(config.get("conflict_window", 2.0)),
        max_workers=int(config.get("max_workers", 4)),
        decision_timeout=float(decision_timeout) if decision_timeout is not None else None,
        metadata_failure_policy=MetadataFailurePolicy(
            config.get("metadata_failure_policy", MetadataFailurePolicy.UPLOAD.value)
        ),
        ignore_patterns=list(config.get("ignore_patterns", [])),
    )
