#file: airquality/aggregation.py

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Callable, List, Optional, Sequence

import pytz

from airquality.cache import DashboardCache
from airquality.database import MeasurementStore
from airquality.distance import MAX_PERMITTED_SPEED_MPS, MEASURING_FREQUENCY_SECONDS, total_distance, \
    validate_coordinates
from airquality.models import (AirQualityReading, AirQualityReadingsInfo, DashboardData, GasKind,
                               GeolocatedAirQualityReading, Measurement, MapsGeolocatedReadings,
                               QualityLevel, TimeRange)
from airquality.scoring import (gas_averages, gas_value, quality_from_proportional_value,
                                reading_from_gas_values, reading_from_measurement, reading_from_single_gas)
from airquality.utils import get_current_time, last_hours_range, month_to_date_range, split_time_range, today_range

DASHBOARD_WINDOW_HOURS = 24
DASHBOARD_INTERVAL_HOURS = 2
# one store query per bucket, all in flight at once
MAX_BUCKETS = 366


def average_quality(readings: Sequence[AirQualityReading]) -> Optional[QualityLevel]:
    """Overall quality of a series: the mean severity of the readings that have data."""
    values = [reading.proportional_value for reading in readings if reading.proportional_value is not None]
    if not values:
        return None
    return quality_from_proportional_value(sum(values) / len(values))


def bucket_reading(bucket: TimeRange, measurements: Sequence[Measurement]) -> AirQualityReading:
    """Reading for one bucket, stamped with the bucket start; the no-data sentinel if empty."""
    if not measurements:
        return AirQualityReading.empty(bucket.start)
    o3, co, no2 = gas_averages(measurements)
    return reading_from_gas_values(o3, co, no2, bucket.start)


def geolocate(reading: AirQualityReading, measurement: Measurement) -> GeolocatedAirQualityReading:
    validate_coordinates(measurement.latitude, measurement.longitude)
    return GeolocatedAirQualityReading(**reading.model_dump(), latitude=measurement.latitude,
                                       longitude=measurement.longitude)


class AggregationEngine:
    """Turns stored measurements into dashboard series, map readings and distances."""

    def __init__(self, store: MeasurementStore, dashboard_cache: Optional[DashboardCache] = None,
                 clock: Callable[[], datetime] = get_current_time, timezone: str = "UTC"):
        self.store = store
        self.dashboard_cache = dashboard_cache
        self.clock = clock
        self.timezone = timezone

    async def readings_in_range(self, user_id: str, start: datetime, end: datetime,
                                interval_hours: float) -> List[AirQualityReading]:
        buckets = split_time_range(start, end, interval_hours)
        if len(buckets) > MAX_BUCKETS:
            raise ValueError(f"Range splits into {len(buckets)} buckets, at most {MAX_BUCKETS} are allowed")
        # gather keeps results in bucket order whatever order the queries finish in
        per_bucket = await asyncio.gather(
            *(self.store.find_measurements(bucket, user_id=user_id) for bucket in buckets)
        )
        return [bucket_reading(bucket, measurements) for bucket, measurements in zip(buckets, per_bucket)]

    async def readings_info(self, user_id: str) -> AirQualityReadingsInfo:
        window = last_hours_range(self.clock(), DASHBOARD_WINDOW_HOURS)
        readings = await self.readings_in_range(user_id, window.start, window.end, DASHBOARD_INTERVAL_HOURS)
        return AirQualityReadingsInfo(readings=readings, overall_quality=average_quality(readings))

    async def geolocated_readings_in_range(self, time_range: TimeRange) -> List[GeolocatedAirQualityReading]:
        """One worst-gas reading per raw measurement, paired with where it was taken."""
        measurements = await self.store.find_measurements(time_range)
        return [geolocate(reading_from_measurement(m), m) for m in measurements]

    async def geolocated_gas_readings_in_range(self, time_range: TimeRange,
                                               gas: GasKind) -> List[GeolocatedAirQualityReading]:
        measurements = await self.store.find_measurements(time_range)
        return [geolocate(reading_from_single_gas(gas, gas_value(m, gas), m.timestamp), m) for m in measurements]

    async def maps_geolocated_readings_in_range(self, time_range: TimeRange) -> MapsGeolocatedReadings:
        """General and per-gas readings for the map layers, from a single store query."""
        measurements = await self.store.find_measurements(time_range)
        maps = MapsGeolocatedReadings()
        for m in measurements:
            maps.general.append(geolocate(reading_from_measurement(m), m))
            maps.o3.append(geolocate(reading_from_single_gas(GasKind.O3, m.o3_value, m.timestamp), m))
            maps.co.append(geolocate(reading_from_single_gas(GasKind.CO, m.co_value, m.timestamp), m))
            maps.no2.append(geolocate(reading_from_single_gas(GasKind.NO2, m.no2_value, m.timestamp), m))
        return maps

    async def today_total_distance(self, user_id: str) -> int:
        day = today_range(self.clock(), self.timezone)
        measurements = await self.store.find_measurements(day, user_id=user_id)
        measurements = sorted(measurements, key=lambda m: m.timestamp)
        return total_distance(((m.latitude, m.longitude) for m in measurements),
                              MAX_PERMITTED_SPEED_MPS, MEASURING_FREQUENCY_SECONDS)

    async def month_total_distance(self, user_id: str) -> int:
        """Meters travelled this month: each local day's trace summed on its own, today included."""
        month = month_to_date_range(self.clock(), self.timezone)
        measurements = await self.store.find_measurements(month, user_id=user_id)

        tz = pytz.timezone(self.timezone)
        by_day = OrderedDict()
        for m in sorted(measurements, key=lambda m: m.timestamp):
            by_day.setdefault(m.timestamp.astimezone(tz).date(), []).append((m.latitude, m.longitude))
        return sum(total_distance(points, MAX_PERMITTED_SPEED_MPS, MEASURING_FREQUENCY_SECONDS)
                   for points in by_day.values())

    async def dashboard_data(self, user_id: str) -> Optional[DashboardData]:
        """Latest reading, today's distance and the 24h series; None if the user never measured."""
        last_measurement = await self.store.last_measurement(user_id)
        if last_measurement is None:
            logging.info(f"No measurements yet for user {user_id}")
            return None

        today_distance = await self.today_total_distance(user_id)

        if self.dashboard_cache is not None:
            info = await self.dashboard_cache.get_or_compute(user_id, lambda: self.readings_info(user_id))
        else:
            info = await self.readings_info(user_id)

        return DashboardData(
            last_air_quality_reading=reading_from_measurement(last_measurement),
            today_distance=today_distance,
            air_quality_readings_info=info,
        )
