# file: airquality/database.py

import asyncio
import logging
from datetime import datetime
from typing import Any, List, Optional, Protocol

import aiohttp
from influxdb_client import Point
from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync
from influxdb_client.rest import ApiException

from airquality.config import Settings
from airquality.errors import UpstreamFailure
from airquality.models import HistoricMap, Measurement, TimeRange
from airquality.utils import to_utc

MEASUREMENTS = "measurements"
MAPS = "air_quality_maps"

# Errors that mean InfluxDB could not answer, as opposed to bugs in our own code
UPSTREAM_ERRORS = (ApiException, aiohttp.ClientError, asyncio.TimeoutError, OSError)


class MeasurementStore(Protocol):
    async def find_measurements(self, time_range: TimeRange, user_id: Optional[str] = None) -> List[Measurement]:
        ...

    async def last_measurement(self, user_id: str) -> Optional[Measurement]:
        ...


class MapRegistry(Protocol):
    async def save_map(self, url: str, timestamp: datetime) -> None:
        ...

    async def find_maps(self, time_range: TimeRange) -> List[HistoricMap]:
        ...

    async def first_map(self) -> Optional[HistoricMap]:
        ...

    async def map_at(self, timestamp: datetime) -> Optional[HistoricMap]:
        ...


def connect(settings: Settings) -> InfluxDBClientAsync:
    return InfluxDBClientAsync(url=settings.influxdb_url, token=settings.influxdb_token, org=settings.influxdb_org)


def flux_time(moment: datetime) -> str:
    """RFC3339 literal understood by Flux range()."""
    return to_utc(moment).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def flux_string(value: str) -> str:
    return '"' + str(value).replace("\\", "\\\\").replace('"', '\\"') + '"'


def record_to_measurement(record: Any) -> Measurement:
    values = record.values
    return Measurement(
        node_id=str(values["node_id"]),
        user_id=values.get("user_id"),
        timestamp=record.get_time(),
        latitude=float(values["latitude"]),
        longitude=float(values["longitude"]),
        o3_value=float(values["o3"]),
        co_value=float(values["co"]),
        no2_value=float(values["no2"]),
    )


def record_to_map(record: Any) -> HistoricMap:
    return HistoricMap(url=record.values["url"], timestamp=record.get_time())


class InfluxMeasurementStore:
    """Read side of the node measurements kept in InfluxDB."""

    def __init__(self, client: InfluxDBClientAsync, bucket: str):
        self.client = client
        self.bucket = bucket

    async def _query(self, query: str, what: str) -> List[Any]:
        try:
            tables = await self.client.query_api().query(query)
        except UPSTREAM_ERRORS as e:
            logging.error(f"Error fetching {what} from InfluxDB: {e}")
            raise UpstreamFailure(f"InfluxDB query for {what} failed") from e
        return [record for table in tables for record in table.records]

    async def find_measurements(self, time_range: TimeRange, user_id: Optional[str] = None) -> List[Measurement]:
        """Measurements in [start, end), optionally for one user, oldest first."""
        if time_range.start >= time_range.end:
            return []

        user_filter = f'|> filter(fn: (r) => r["user_id"] == {flux_string(user_id)})' if user_id is not None else ""
        query = f'''
            from(bucket: "{self.bucket}")
            |> range(start: {flux_time(time_range.start)}, stop: {flux_time(time_range.end)})
            |> filter(fn: (r) => r._measurement == "{MEASUREMENTS}")
            {user_filter}
            |> pivot(rowKey:["_time"], columnKey:["_field"], valueColumn:"_value")
            |> group()
            |> sort(columns: ["_time"], desc: false)
        '''
        records = await self._query(query, "measurements")
        measurements = [record_to_measurement(record) for record in records]
        return sorted(measurements, key=lambda m: m.timestamp)

    async def last_measurement(self, user_id: str) -> Optional[Measurement]:
        query = f'''
            from(bucket: "{self.bucket}")
            |> range(start: -10y)
            |> filter(fn: (r) => r._measurement == "{MEASUREMENTS}")
            |> filter(fn: (r) => r["user_id"] == {flux_string(user_id)})
            |> pivot(rowKey:["_time"], columnKey:["_field"], valueColumn:"_value")
            |> group()
            |> sort(columns: ["_time"], desc: true)
            |> limit(n: 1)
        '''
        records = await self._query(query, "last measurement")
        return record_to_measurement(records[0]) if records else None


class InfluxMapRegistry:
    """Archived air quality maps, one point per archived artifact."""

    def __init__(self, client: InfluxDBClientAsync, bucket: str):
        self.client = client
        self.bucket = bucket

    async def save_map(self, url: str, timestamp: datetime) -> None:
        point = Point(MAPS).field("url", url).time(to_utc(timestamp))
        try:
            await self.client.write_api().write(bucket=self.bucket, record=[point])
        except UPSTREAM_ERRORS as e:
            logging.error(f"Error saving air quality map {url}: {e}")
            raise UpstreamFailure("InfluxDB write for air quality map failed") from e

    async def _query(self, query: str) -> List[HistoricMap]:
        try:
            tables = await self.client.query_api().query(query)
        except UPSTREAM_ERRORS as e:
            logging.error(f"Error fetching air quality maps from InfluxDB: {e}")
            raise UpstreamFailure("InfluxDB query for air quality maps failed") from e
        return [record_to_map(record) for table in tables for record in table.records]

    def _base_query(self, start: str, stop: Optional[str] = None) -> str:
        stop_clause = f", stop: {stop}" if stop else ""
        return f'''
            from(bucket: "{self.bucket}")
            |> range(start: {start}{stop_clause})
            |> filter(fn: (r) => r._measurement == "{MAPS}" and r._field == "url")
            |> pivot(rowKey:["_time"], columnKey:["_field"], valueColumn:"_value")
            |> group()
        '''

    async def find_maps(self, time_range: TimeRange) -> List[HistoricMap]:
        if time_range.start >= time_range.end:
            return []
        query = self._base_query(flux_time(time_range.start), flux_time(time_range.end)) + \
            '|> sort(columns: ["_time"], desc: false)'
        return sorted(await self._query(query), key=lambda m: m.timestamp)

    async def first_map(self) -> Optional[HistoricMap]:
        maps = await self._query(self._base_query("0") + '|> sort(columns: ["_time"], desc: false) |> limit(n: 1)')
        return maps[0] if maps else None

    async def map_at(self, timestamp: datetime) -> Optional[HistoricMap]:
        moment = to_utc(timestamp)
        # range() stop is exclusive: stop one nanosecond after the requested instant
        query = self._base_query(flux_time(moment), f"{flux_time(moment)[:-1]}001Z") + '|> limit(n: 1)'
        maps = await self._query(query)
        return maps[0] if maps else None
