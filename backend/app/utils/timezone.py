"""
Timezone utilities for NRSS.
Provides consistent UTC datetime handling for snapshot and progress timestamps.
"""
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone info.
    Replacement for deprecated datetime.utcnow().
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is UTC and timezone-aware.
    If timezone-naive, assumes it's already UTC and adds UTC timezone.
    If timezone-aware, converts to UTC.
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # Assume naive datetime is already UTC
        return dt.replace(tzinfo=timezone.utc)
    else:
        return dt.astimezone(timezone.utc)


def format_iso_utc(dt: Optional[datetime]) -> str:
    """
    Format datetime as ISO string in UTC.
    Returns empty string if datetime is None.
    """
    if dt is None:
        return ""

    utc_dt = ensure_utc(dt)
    if utc_dt is None:
        return ""

    return utc_dt.isoformat()


def parse_iso_utc(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp (NRK uses both 'Z' and '+01:00' suffixes) into aware UTC.
    Returns None for empty or unparseable input.
    """
    if not value:
        return None
    try:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def now_iso() -> str:
    return format_iso_utc(utc_now())
