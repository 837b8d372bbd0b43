#!/usr/bin/env python3
"""
Utility functions shared by the reader and the command-line entry point.
"""

from typing import Optional
from urllib.parse import urldefrag, urlparse

from bs4 import BeautifulSoup

from config import get_logger

logger = get_logger("utils")


def validate_url(url: str) -> bool:
    """Validate if a string is an absolute http(s) URL with a host.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def normalize_feed_url(url: str) -> Optional[str]:
    """Return the canonical form used as a feed's identity, or None if invalid.

    Surrounding whitespace and any #fragment are removed; fragments never reach
    the server, so two URLs differing only there name the same feed.
    """
    if not validate_url(url):
        return None
    return urldefrag(url.strip()).url


def strip_html(text: Optional[str]) -> Optional[str]:
    """Reduce an HTML fragment to its plain text, or None when nothing is left."""
    if not text:
        return None
    if '<' not in text and '&' not in text:
        return text.strip() or None
    plain = BeautifulSoup(text, 'html.parser').get_text(" ", strip=True)
    return plain or None


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix
