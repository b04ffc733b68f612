#file: airquality/utils.py

from datetime import datetime, timedelta
from typing import List

import pytz

from airquality.models import TimeRange


def get_current_time() -> datetime:
    """Get current UTC time as an aware datetime."""
    return datetime.now(pytz.utc)


def to_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if moment.tzinfo is None:
        return pytz.utc.localize(moment)
    return moment.astimezone(pytz.utc)


def split_time_range(start: datetime, end: datetime, interval_hours: float) -> List[TimeRange]:
    """
    Split [start, end) into consecutive windows of interval_hours.

    The first window starts at the top of start's hour and the last one is
    clipped to end. When the aligned span fits in one interval the whole span
    is returned as a single window, so start == end still yields one bucket.
    """
    if interval_hours <= 0:
        raise ValueError("interval_hours must be > 0")
    if start > end:
        raise ValueError("start must be <= end")

    aligned_start = start.replace(minute=0, second=0, microsecond=0)
    interval = timedelta(hours=interval_hours)

    if end - aligned_start <= interval:
        return [TimeRange(start=aligned_start, end=end)]

    ranges = []
    current_start = aligned_start
    while current_start < end:
        current_end = min(current_start + interval, end)
        ranges.append(TimeRange(start=current_start, end=current_end))
        current_start = current_end
    return ranges


def today_range(now: datetime, timezone: str = "UTC") -> TimeRange:
    """Calendar day containing now in the given time zone, from midnight up to now."""
    tz = pytz.timezone(timezone)
    local_now = to_utc(now).astimezone(tz)
    midnight = tz.localize(datetime(local_now.year, local_now.month, local_now.day))
    return TimeRange(start=midnight.astimezone(pytz.utc), end=to_utc(now))


def last_hours_range(now: datetime, hours: float) -> TimeRange:
    end = to_utc(now)
    return TimeRange(start=end - timedelta(hours=hours), end=end)


def last_minutes_range(now: datetime, minutes: float) -> TimeRange:
    return last_hours_range(now, minutes / 60)


def month_range(year: int, month: int) -> TimeRange:
    """First instant of the month up to the first instant of the next one, in UTC."""
    if not 1 <= month <= 12:
        raise ValueError(f"month must be between 1 and 12, got {month}")
    start = pytz.utc.localize(datetime(year, month, 1))
    end = pytz.utc.localize(datetime(year + month // 12, month % 12 + 1, 1))
    return TimeRange(start=start, end=end)


def month_to_date_range(now: datetime, timezone: str = "UTC") -> TimeRange:
    """From local midnight on the first of now's month up to now."""
    tz = pytz.timezone(timezone)
    local_now = to_utc(now).astimezone(tz)
    first = tz.localize(datetime(local_now.year, local_now.month, 1))
    return TimeRange(start=first.astimezone(pytz.utc), end=to_utc(now))
