"""
Timezone helpers. Datetimes cross module boundaries as aware UTC; local time
only appears inside business-hours checks.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"


def get_zoneinfo(timezone_str: Optional[str] = None, default: str = DEFAULT_TIMEZONE) -> ZoneInfo:
    """Client's IANA zone, or the default when unset or unknown."""
    if timezone_str:
        try:
            return ZoneInfo(timezone_str)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, using %s", timezone_str, default)
    return ZoneInfo(default)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Any) -> Optional[datetime]:
    """Aware UTC datetime. Naive values (SQLite round-trips) are taken as UTC."""
    if not isinstance(dt, datetime):
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
