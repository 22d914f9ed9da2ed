"""URL helpers shared by the crawler components."""

from __future__ import annotations

from typing import Optional
from urllib.parse import SplitResult, urlsplit


def _split(url: str) -> Optional[SplitResult]:
    url = url.strip()
    if not url:
        return None
    if "://" not in url:
        url = f"https://{url}"
    try:
        parts = urlsplit(url)
        # Accessing .port validates it and raises on garbage like ":abc".
        parts.port
    except ValueError:
        return None
    if not parts.hostname:
        return None
    return parts


def extract_domain(url: str) -> Optional[str]:
    """
    Return the lower-cased host of ``url``.

    URLs without a scheme are treated as ``https://``. Returns None when no
    host can be parsed.
    """
    parts = _split(url)
    return parts.hostname.lower() if parts and parts.hostname else None


def extract_path(url: str) -> str:
    """Return the path of ``url``, always starting with ``/``."""
    parts = _split(url)
    if parts is None or not parts.path:
        return "/"
    return parts.path if parts.path.startswith("/") else f"/{parts.path}"


def explicit_port(url: str) -> Optional[int]:
    """Return the port written in ``url``, or None when it relies on the scheme default."""
    parts = _split(url)
    return parts.port if parts else None
