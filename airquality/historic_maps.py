#file: airquality/historic_maps.py

from collections import OrderedDict
from datetime import datetime

import pytz

from airquality.database import MapRegistry
from airquality.models import AvailableDate, CalendarMetadata
from airquality.utils import month_range


def format_time(moment: datetime) -> str:
    """Time of day as HH:MM:SS.mmmZ in UTC."""
    moment = moment.astimezone(pytz.utc)
    return f"{moment.strftime('%H:%M:%S')}.{moment.microsecond // 1000:03d}Z"


async def calendar_metadata(registry: MapRegistry, year: int, month: int) -> CalendarMetadata:
    """Days of the month that have archived maps, with the times available on each."""
    time_range = month_range(year, month)
    first = await registry.first_map()
    maps = await registry.find_maps(time_range)

    by_date = OrderedDict()
    for historic_map in sorted(maps, key=lambda m: m.timestamp):
        moment = historic_map.timestamp.astimezone(pytz.utc)
        by_date.setdefault(moment.date(), []).append(format_time(moment))

    return CalendarMetadata(
        first_available_year=first.timestamp.astimezone(pytz.utc).year if first else None,
        year=year,
        month=month,
        available_dates=[AvailableDate(date=day, times=times) for day, times in by_date.items()],
    )

