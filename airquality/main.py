# file : airquality/main.py

import asyncio
import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime
from functools import partial
from typing import Any, Dict, Optional

import schedule
import uvicorn
from fastapi import FastAPI, HTTPException, Path, Query, Request
from fastapi.responses import FileResponse, JSONResponse

from airquality.aggregation import AggregationEngine, average_quality
from airquality.cache import DashboardCache, RedisCache
from airquality.config import load_settings
from airquality.database import InfluxMapRegistry, InfluxMeasurementStore, connect
from airquality.errors import InvalidMeasurement, UpstreamFailure
from airquality.historic_maps import calendar_metadata
from airquality.maps import LocalArtifactStore, MapDataBuilder, render_html
from airquality.models import (AirQualityReadingsInfo, CalendarMetadata, DashboardData, HistoricMap, MapArtifact,
                               MapsGeolocatedReadings, TimeRange)
from airquality.scheduler import run_schedule
from airquality.utils import get_current_time, last_hours_range, last_minutes_range, to_utc

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

ARTIFACT_NAME = re.compile(r"^[A-Za-z0-9_-]+$")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the store, cache and map builder, start the map scheduler and build a first map."""
    settings = load_settings()
    client = connect(settings)
    cache = RedisCache.from_url(settings.redis_url)

    store = InfluxMeasurementStore(client, settings.influxdb_bucket)
    registry = InfluxMapRegistry(client, settings.influxdb_bucket)
    engine = AggregationEngine(store, DashboardCache(cache), timezone=settings.timezone)
    artifacts = LocalArtifactStore(settings.map_output_dir, settings.map_base_url)
    builder = MapDataBuilder(
        engine, artifacts, registry,
        renderer=partial(render_html, center=(settings.map_center_lat, settings.map_center_lon)),
        window_minutes=settings.map_interval_minutes,
    )

    app.state.engine = engine
    app.state.registry = registry
    app.state.artifacts = artifacts
    app.state.builder = builder

    job = run_schedule(builder.run, asyncio.get_running_loop(), settings.map_interval_minutes)
    try:
        await builder.run()
    except Exception as e:
        logging.error(f"Initial map generation failed: {e}")

    yield

    schedule.cancel_job(job)
    await cache.close()
    await client.close()


app = FastAPI(
    title="Air Quality Scoring & Aggregation",
    description="Scores gas sensor measurements and serves dashboard series, distances and heatmaps.",
    version="0.1",
    lifespan=lifespan
)


@app.exception_handler(InvalidMeasurement)
async def invalid_measurement_handler(request: Request, exc: InvalidMeasurement):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(UpstreamFailure)
async def upstream_failure_handler(request: Request, exc: UpstreamFailure):
    logging.error(f"Upstream failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Measurement store unavailable"})


@app.get("/dashboard/{user_id}", response_model=Optional[DashboardData])
async def dashboard(request: Request, user_id: str):
    """Latest reading, today's distance and the cached 24h series for a user."""
    logging.info(f"Fetching dashboard data for user {user_id}")
    return await request.app.state.engine.dashboard_data(user_id)


@app.get("/air_quality/{user_id}", response_model=AirQualityReadingsInfo)
async def air_quality(
    request: Request,
    user_id: str,
    start: Optional[datetime] = Query(None, description="Start of the range (defaults to 24h ago)"),
    end: Optional[datetime] = Query(None, description="End of the range (defaults to now)"),
    interval_hours: float = Query(2, ge=0.25, description="Bucket size in hours (at least 15 minutes)")
):
    """Bucketed air quality readings for a user with the overall quality of the range."""
    window = last_hours_range(get_current_time(), 24)
    readings = await request.app.state.engine.readings_in_range(
        user_id, to_utc(start) if start else window.start, to_utc(end) if end else window.end, interval_hours
    )
    return AirQualityReadingsInfo(readings=readings, overall_quality=average_quality(readings))


@app.get("/distance/{user_id}/today", response_model=Dict[str, int])
async def today_distance(request: Request, user_id: str):
    """Meters travelled by the user's node since midnight."""
    return {"today_distance": await request.app.state.engine.today_total_distance(user_id)}


@app.get("/distance/{user_id}/month", response_model=Dict[str, int])
async def month_distance(request: Request, user_id: str):
    """Meters travelled by the user's node since the first of the month, today included."""
    return {"month_distance": await request.app.state.engine.month_total_distance(user_id)}


@app.get("/maps/readings", response_model=MapsGeolocatedReadings)
async def map_readings(
    request: Request,
    start: Optional[datetime] = Query(None, description="Start of the range (defaults to 30 minutes ago)"),
    end: Optional[datetime] = Query(None, description="End of the range (defaults to now)")
):
    """Per-measurement geolocated readings for the general, O3, CO and NO2 layers."""
    window = last_minutes_range(get_current_time(), 30)
    time_range = TimeRange(start=to_utc(start) if start else window.start, end=to_utc(end) if end else window.end)
    return await request.app.state.engine.maps_geolocated_readings_in_range(time_range)


@app.get("/maps/current", response_model=MapArtifact)
async def current_map(request: Request):
    latest = await request.app.state.artifacts.find_latest()
    if latest is None:
        raise HTTPException(status_code=404, detail="No current air quality map found")
    return latest


@app.get("/maps/calendar", response_model=CalendarMetadata)
async def maps_calendar(
    request: Request,
    year: int = Query(..., ge=1970, description="Calendar year"),
    month: int = Query(..., ge=1, le=12, description="Calendar month (1-12)")
):
    """Dates and times for which an archived map exists in the given month."""
    return await calendar_metadata(request.app.state.registry, year, month)


@app.get("/maps/history/{timestamp}", response_model=HistoricMap)
async def historic_map(request: Request, timestamp: datetime = Path(..., description="Archive timestamp")):
    found = await request.app.state.registry.map_at(timestamp)
    if found is None:
        raise HTTPException(status_code=404, detail="No map found for the given timestamp")
    return found


@app.post("/maps/generate", response_model=Dict[str, Any])
async def generate_map(request: Request):
    """Regenerate the map now; skipped if a scheduled run is in progress."""
    url = await request.app.state.builder.run()
    return {"url": url, "skipped": url is None}


@app.get("/maps/files/{name}")
async def map_file(request: Request, name: str):
    stem = name[:-5] if name.endswith(".html") else name
    if not ARTIFACT_NAME.match(stem):
        raise HTTPException(status_code=400, detail="Invalid map name")
    path = os.path.join(request.app.state.artifacts.directory, f"{stem}.html")
    if not os.path.exists(path):
        raise HTTPException(status_code=404, detail="Map not found")
    return FileResponse(path, media_type="text/html")


if __name__ == "__main__" :
    uvicorn.run(app, host = "0.0.0.0", port = 8000, log_level="info")
