"""Formatting utilities for CLI output."""

import time
from typing import Optional


def format_time_ago(timestamp: Optional[float], now: Optional[float] = None) -> str:
    """Format an epoch timestamp as relative time (e.g., '2 hours ago').

    Args:
        timestamp: Unix timestamp in seconds.
        now: Reference time; defaults to the current time.

    Returns:
        Human-readable relative time string like "2 hours ago" or "Never".

    Examples:
        >>> format_time_ago(1000.0, now=1120.0)
        '2 minutes ago'
        >>> format_time_ago(None)
        'Never'
    """
    if not timestamp:
        return "Never"

    if now is None:
        now = time.time()
    seconds = now - timestamp

    if seconds < 60:
        return "Just now"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"


def format_remaining(expires_at: Optional[float], now: float) -> str:
    """Format the time left before a PIN expires as M:SS.

    Examples:
        >>> format_remaining(1299.0, 1000.0)
        '4:59'
        >>> format_remaining(1000.0, 1000.0)
        'expired'
    """
    if expires_at is None:
        return "-"
    remaining = int(expires_at - now)
    if remaining <= 0:
        return "expired"
    minutes, seconds = divmod(remaining, 60)
    return f"{minutes}:{seconds:02d}"
