from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(timestamp_str: str) -> Optional[datetime]:
    """Parse an ISO timestamp string into an aware UTC datetime.

    Naive input is assumed to already be in UTC.
    """
    if not timestamp_str:
        return None
    try:
        dt = datetime.fromisoformat(timestamp_str)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_duration(seconds: float) -> str:
    """Human readable duration: 45s, 12m, 2h5m."""
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        return f"{round(seconds / 60)}m"
    hours = int(seconds // 3600)
    mins = round((seconds % 3600) / 60)
    return f"{hours}h{mins}m"
