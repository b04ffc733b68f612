"""
Shared fakes for the air quality engine tests.

The store, cache and registry fakes implement the same async ports as the
InfluxDB and Redis adapters, so the engine can be exercised without services.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytz

from airquality.models import HistoricMap, Measurement, TimeRange

T0 = pytz.utc.localize(datetime(2024, 5, 15, 0, 0))


def make_measurement(minutes: float = 0, o3: float = 0.01, co: float = 1.0, no2: float = 0.01,
                     lat: float = 39.47, lon: float = -0.376, user_id: str = "1", node_id: str = "node-1",
                     base: datetime = T0) -> Measurement:
    return Measurement(
        node_id=node_id,
        user_id=user_id,
        timestamp=base + timedelta(minutes=minutes),
        latitude=lat,
        longitude=lon,
        o3_value=o3,
        co_value=co,
        no2_value=no2,
    )


class FakeStore:
    """In-memory measurement store that records every query."""

    def __init__(self, measurements: Optional[List[Measurement]] = None, delays: Optional[Dict[datetime, float]] = None,
                 error: Optional[Exception] = None):
        self.measurements = list(measurements or [])
        self.delays = delays or {}
        self.error = error
        self.calls: List[tuple] = []

    async def find_measurements(self, time_range: TimeRange, user_id: Optional[str] = None) -> List[Measurement]:
        self.calls.append((time_range, user_id))
        if self.error is not None:
            raise self.error
        delay = self.delays.get(time_range.start)
        if delay:
            await asyncio.sleep(delay)
        return [
            m for m in self.measurements
            if time_range.start <= m.timestamp < time_range.end and (user_id is None or m.user_id == user_id)
        ]

    async def last_measurement(self, user_id: str) -> Optional[Measurement]:
        if self.error is not None:
            raise self.error
        mine = [m for m in self.measurements if m.user_id == user_id]
        return max(mine, key=lambda m: m.timestamp) if mine else None


class FakeCache:
    """Dict-backed cache port; values go through the same JSON-ready shape as Redis."""

    def __init__(self, fail_get: bool = False, fail_set: bool = False):
        self.data: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}
        self.fail_get = fail_get
        self.fail_set = fail_set
        self.get_calls = 0
        self.set_calls = 0

    async def get(self, key: str) -> Optional[Any]:
        self.get_calls += 1
        if self.fail_get:
            raise ConnectionError("cache down")
        return self.data.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: int = 3600) -> None:
        self.set_calls += 1
        if self.fail_set:
            raise ConnectionError("cache down")
        self.data[key] = value
        self.ttls[key] = ttl_seconds


class FakeRegistry:
    def __init__(self, maps: Optional[List[HistoricMap]] = None):
        self.maps = list(maps or [])

    async def save_map(self, url: str, timestamp: datetime) -> None:
        self.maps.append(HistoricMap(url=url, timestamp=timestamp))

    async def find_maps(self, time_range: TimeRange) -> List[HistoricMap]:
        found = [m for m in self.maps if time_range.start <= m.timestamp < time_range.end]
        return sorted(found, key=lambda m: m.timestamp)

    async def first_map(self) -> Optional[HistoricMap]:
        return min(self.maps, key=lambda m: m.timestamp) if self.maps else None

    async def map_at(self, timestamp: datetime) -> Optional[HistoricMap]:
        return next((m for m in self.maps if m.timestamp == timestamp), None)


@pytest.fixture
def fixed_clock():
    """Clock frozen at 10:30 UTC on the test day."""
    return lambda: T0 + timedelta(hours=10, minutes=30)
