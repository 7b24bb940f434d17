"""
Utility functions for file system operations, timestamps and text handling.

This module provides helper functions for:
- Ensuring directory creation
- Normalizing uploaded file extensions for safe storage names
- Producing timezone-aware UTC timestamps and their ISO serialization
- Normalizing recognised text for substring search
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional
from uuid import uuid4

# Extensions may only contain alphanumerics after the leading dot
EXTENSION_PATTERN = re.compile(r"^\.[a-zA-Z0-9]{1,10}$")

ALLOWED_IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp")


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def new_id() -> str:
    """Return a new opaque identifier (hex UUID4)."""
    return uuid4().hex


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def storage_extension(filename: Optional[str], fallback: str = ".png") -> str:
    """
    Derive a safe, lowercase file extension from an uploaded filename.

    Example:
        >>> storage_extension("scan 01.JPG")
        ".jpg"
        >>> storage_extension("weird.name.$$$")
        ".png"
    """
    suffix = Path(filename or "").suffix.lower()
    if EXTENSION_PATTERN.match(suffix):
        return suffix
    return fallback


def is_allowed_image(filename: Optional[str], allowed: Iterable[str] = ALLOWED_IMAGE_EXTENSIONS) -> bool:
    return Path(filename or "").suffix.lower() in set(allowed)


def normalize_search_text(text: str) -> str:
    """
    Remove every whitespace character so that recognised text and user
    queries compare independently of line breaks and word spacing.

    Example:
        >>> normalize_search_text(" Hello  world\\n")
        "Helloworld"
    """
    return "".join(char for char in text if not char.isspace())
