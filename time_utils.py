"""
Centralized time utilities for the channel archive.

All clock reads go through these helpers so that:
- Timestamps are always timezone-aware UTC
- Run timestamps and message timestamps share one unit (epoch milliseconds)
- ISO strings use a consistent Z suffix
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """
    Return current UTC time as timezone-aware datetime.

    Use this instead of datetime.utcnow() which is deprecated in Python 3.12+.
    """
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """
    Return current UTC time as ISO string with Z suffix.

    Format: 2026-02-14T12:34:56.789012Z
    """
    return utc_now().isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(utc_now().timestamp() * 1000)


def ms_to_iso(ms: int) -> str:
    """
    Render epoch milliseconds as an ISO string with Z suffix.

    0 is rendered as "never", which is how an empty ledger reads in logs.
    """
    if not ms:
        return "never"
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat().replace("+00:00", "Z")
