"""
Datetime utilities
Timezone-aware replacements for datetime.utcnow()
"""
from datetime import datetime, timezone


def utc_now() -> datetime:
    """
    Get current UTC time with timezone awareness

    Example:
        >>> from context_engine.utils.datetime_utils import utc_now
        >>> utc_now().tzinfo
        datetime.timezone.utc
    """
    return datetime.now(timezone.utc)


def utc_now_ms() -> int:
    """Get current UTC time as integer milliseconds since the epoch"""
    return int(utc_now().timestamp() * 1000)
