"""
Business-hours window for a client.

The window is a local time-of-day range applied every day. start == end means
always open; start > end is an overnight window (e.g. 22:00-06:00).
"""
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from leadflow.utils.timezone import as_utc, get_zoneinfo

logger = logging.getLogger(__name__)


def parse_hhmm(value: Optional[str], default: str) -> time:
    """Parse "HH:MM", falling back to `default` on bad input."""
    for candidate in (value, default):
        if not candidate:
            continue
        try:
            hours, minutes = candidate.strip().split(":", 1)
            return time(int(hours), int(minutes))
        except ValueError:
            logger.warning("Invalid business-hours time %r, using %s", candidate, default)
    return time(0, 0)


@dataclass(frozen=True)
class BusinessHours:
    start: time
    end: time
    tz: ZoneInfo

    @classmethod
    def for_client(cls, client, sms_settings, settings) -> "BusinessHours":
        start = sms_settings.business_hours_start if sms_settings else None
        end = sms_settings.business_hours_end if sms_settings else None
        tz = get_zoneinfo(getattr(client, "timezone", None), default=settings.default_timezone)
        return cls(
            start=parse_hhmm(start, settings.default_business_hours_start),
            end=parse_hhmm(end, settings.default_business_hours_end),
            tz=tz,
        )

    def is_open(self, at: datetime) -> bool:
        local_time = as_utc(at).astimezone(self.tz).time()
        if self.start == self.end:
            return True
        if self.start < self.end:
            return self.start <= local_time < self.end
        return local_time >= self.start or local_time < self.end

    def next_open(self, at: datetime) -> datetime:
        """`at` itself when open, otherwise the next window start (UTC)."""
        at = as_utc(at)
        if self.is_open(at):
            return at
        local = at.astimezone(self.tz)
        candidate_date = local.date()
        candidate = datetime.combine(candidate_date, self.start, tzinfo=self.tz)
        if candidate <= local:
            candidate = datetime.combine(candidate_date + timedelta(days=1), self.start, tzinfo=self.tz)
        return as_utc(candidate)
