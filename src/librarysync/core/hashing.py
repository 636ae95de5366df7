"""Content hashing for change detection.

SHA-256 digests are the authority for "same content" between the local
library and the server catalog; timestamps are never used for equality.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

HASH_BLOCK_SIZE = 64 * 1024


def compute_file_hash(path: Path) -> str:
    """Compute SHA-256 hash of a file.

    Reads the file in blocks to handle large files efficiently.

    Args:
        path: Path to the file to hash.

    Returns:
        Lower-case hexadecimal SHA-256 hash string.

    Raises:
        OSError: If the file cannot be read.
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            hasher.update(block)
    return hasher.hexdigest()


def compute_bytes_hash(data: bytes) -> str:
    """Compute SHA-256 hash of in-memory content."""
    return hashlib.sha256(data).hexdigest()
