#!/usr/bin/env python3
"""
Small shared helpers for the poller: URL validation for seeding and
human-readable durations/timestamps for logs and the status command.
"""

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

ALLOWED_SCHEMES = ('http', 'https')


def validate_url(url: str) -> bool:
    """Check that a string is an absolute http(s) URL with a host.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL can be polled, False otherwise
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
    return parsed.scheme.lower() in ALLOWED_SCHEMES and bool(parsed.hostname)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds as e.g. "1d 2h 3m" or "45s"."""
    if seconds <= 0:
        return "0s"

    days, remainder = divmod(int(seconds), 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


def format_timestamp(epoch: Optional[int]) -> str:
    """Render an epoch-seconds value as UTC ISO 8601, or "-" when unset."""
    if epoch is None:
        return "-"
    try:
        return datetime.fromtimestamp(int(epoch), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    except (OverflowError, OSError, ValueError):
        logger.debug(f"Unrepresentable timestamp {epoch!r}")
        return str(epoch)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length (suffix included)."""
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix
