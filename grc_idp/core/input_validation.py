"""Input normalization helpers shared by drivers, builders and routes."""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlsplit

_KEY_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")
_DRIVER_INVALID_CHARS = re.compile(r"[^a-z0-9._-]")


def is_valid_url(value: Any) -> bool:
    """True for absolute URLs with a scheme and a host."""
    if not isinstance(value, str) or not value.strip() or value != value.strip():
        return False
    if any(ch.isspace() for ch in value):
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return bool(parts.scheme) and bool(parts.netloc)


def normalize_provider_key(raw: str) -> str:
    """Lowercase slug: ``[^a-z0-9-]`` runs become ``-``, edges trimmed."""
    return _KEY_INVALID_CHARS.sub("-", raw.strip().lower()).strip("-")


def normalize_driver_key(raw: str) -> str:
    return _DRIVER_INVALID_CHARS.sub("", raw.strip().lower())


def trimmed_string(value: Any) -> str | None:
    """Stripped string, or None for non-strings and blank strings."""
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def safe_return_path(value: Any, max_length: int = 512) -> str | None:
    """Local path to send the browser back to after login, or None.

    Only site-relative paths are accepted; protocol-relative ``//host`` and
    absolute URLs are dropped so a login cannot bounce to another origin.
    """
    path = trimmed_string(value)
    if path is None or len(path) > max_length:
        return None
    if not path.startswith("/") or path.startswith("//") or "\\" in path:
        return None
    return path
