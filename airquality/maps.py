#file: airquality/maps.py

import asyncio
import logging
import os
import shutil
import tempfile
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import plotly.graph_objects as go
import pytz

from airquality.aggregation import AggregationEngine
from airquality.database import MapRegistry
from airquality.errors import UpstreamFailure
from airquality.models import GeolocatedAirQualityReading, HeatmapPoint, MapArtifact, MapsGeolocatedReadings
from airquality.scoring import SEVERITY_THRESHOLDS
from airquality.utils import get_current_time, last_minutes_range

LATEST_NAME = "latest"
DEFAULT_CENTER = (39.47, -0.376)
DEFAULT_WINDOW_MINUTES = 30
MAX_ARCHIVE_SUFFIX = 99


def intensity(proportional_value: float) -> float:
    """Heatmap intensity band for a severity: low, medium or high."""
    if proportional_value <= SEVERITY_THRESHOLDS.good:
        return 0.3
    if proportional_value <= SEVERITY_THRESHOLDS.regular:
        return 0.6
    return 1.0


def heatmap_points(readings: Sequence[GeolocatedAirQualityReading]) -> List[HeatmapPoint]:
    return [
        HeatmapPoint(reading.latitude, reading.longitude, intensity(reading.proportional_value))
        for reading in readings
        if reading.proportional_value is not None
    ]


def archive_name(published_at: datetime) -> str:
    """File-system and URL safe name for an archived artifact, to the millisecond."""
    moment = published_at.astimezone(pytz.utc)
    return f"{moment.strftime('%Y-%m-%dT%H-%M-%S')}-{moment.microsecond // 1000:03d}Z"


def render_html(maps: MapsGeolocatedReadings, center: Tuple[float, float] = DEFAULT_CENTER,
                zoom: int = 14) -> str:
    """Render the four heatmap layers into a standalone HTML page."""
    layers = [("General", maps.general), ("O₃", maps.o3), ("CO", maps.co), ("NO₂", maps.no2)]

    fig = go.Figure()
    for index, (label, readings) in enumerate(layers):
        points = heatmap_points(readings)
        fig.add_trace(go.Densitymapbox(
            lat=[p.latitude for p in points],
            lon=[p.longitude for p in points],
            z=[p.intensity for p in points],
            zmin=0,
            zmax=1,
            radius=25,
            opacity=0.6,
            colorscale=[[0.0, "green"], [0.6, "yellow"], [1.0, "red"]],
            name=label,
            visible=index == 0,
        ))

    buttons = [
        dict(label=label, method="update",
             args=[{"visible": [i == index for i in range(len(layers))]}, {"title": f"Air quality: {label}"}])
        for index, (label, _) in enumerate(layers)
    ]
    fig.update_layout(
        title="Air quality: General",
        mapbox_style="open-street-map",
        mapbox_center={"lat": center[0], "lon": center[1]},
        mapbox_zoom=zoom,
        updatemenus=[dict(buttons=buttons, direction="down", x=0.01, y=0.99)],
        margin={"r": 0, "t": 30, "l": 0, "b": 0},
    )
    return fig.to_html(include_plotlyjs="cdn", full_html=True)


class ArtifactStore(Protocol):
    async def find_latest(self) -> Optional[MapArtifact]:
        ...

    async def archive(self, artifact: MapArtifact, name: str) -> MapArtifact:
        ...

    async def publish(self, html: str) -> MapArtifact:
        ...


class LocalArtifactStore:
    """HTML map artifacts in a directory; the current map is always latest.html."""

    def __init__(self, directory: str, base_url: str = ""):
        self.directory = directory
        self.base_url = base_url.rstrip("/")
        os.makedirs(directory, exist_ok=True)

    def _path(self, name: str) -> str:
        return os.path.join(self.directory, f"{name}.html")

    def _artifact(self, name: str) -> MapArtifact:
        published_at = datetime.fromtimestamp(os.path.getmtime(self._path(name)), tz=pytz.utc)
        return MapArtifact(name=name, url=f"{self.base_url}/{name}.html", published_at=published_at)

    async def find_latest(self) -> Optional[MapArtifact]:
        if not os.path.exists(self._path(LATEST_NAME)):
            return None
        return await asyncio.to_thread(self._artifact, LATEST_NAME)

    def _archive(self, artifact: MapArtifact, name: str) -> MapArtifact:
        target = self._path(name)
        if os.path.exists(target):
            raise FileExistsError(f"Archived map {target} already exists")
        # copy2 keeps the mtime, which is the archived map's publish time
        shutil.copy2(self._path(artifact.name), target)
        return self._artifact(name)

    async def archive(self, artifact: MapArtifact, name: str) -> MapArtifact:
        return await asyncio.to_thread(self._archive, artifact, name)

    def _publish(self, html: str) -> MapArtifact:
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(html)
            os.replace(tmp_path, self._path(LATEST_NAME))
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        return self._artifact(LATEST_NAME)

    async def publish(self, html: str) -> MapArtifact:
        return await asyncio.to_thread(self._publish, html)


class MapDataBuilder:
    """
    Periodically rebuilds the air quality map.

    Publishing is two-phase: the current "latest" artifact is first copied to
    an archive name derived from its own publish time, then the new map
    atomically replaces "latest", so a current map is always addressable. The
    archive is recorded in the registry last; a registry outage is logged and
    leaves the published map in place. Runs never overlap; a run requested
    while another is in flight is skipped.
    """

    def __init__(self, engine: AggregationEngine, artifact_store: ArtifactStore,
                 registry: Optional[MapRegistry] = None,
                 renderer: Callable[[MapsGeolocatedReadings], str] = render_html,
                 window_minutes: float = DEFAULT_WINDOW_MINUTES,
                 clock: Callable[[], datetime] = get_current_time):
        self.engine = engine
        self.artifact_store = artifact_store
        self.registry = registry
        self.renderer = renderer
        self.window_minutes = window_minutes
        self.clock = clock
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def build(self) -> MapsGeolocatedReadings:
        time_range = last_minutes_range(self.clock(), self.window_minutes)
        return await self.engine.maps_geolocated_readings_in_range(time_range)

    async def _archive_latest(self) -> Optional[Tuple[MapArtifact, datetime]]:
        """Copy the current latest map into the archive; returns the archive and the time it was published."""
        latest = await self.artifact_store.find_latest()
        if latest is None:
            return None

        base = archive_name(latest.published_at)
        for attempt in range(MAX_ARCHIVE_SUFFIX + 1):
            name = base if attempt == 0 else f"{base}-{attempt}"
            try:
                archived = await self.artifact_store.archive(latest, name)
            except FileExistsError:
                continue
            logging.info(f"Archived previous map as {archived.name}")
            return archived, latest.published_at
        raise FileExistsError(f"No free archive name for map published at {base}")

    async def _record(self, archived: MapArtifact, published_at: datetime) -> None:
        if self.registry is None:
            return
        try:
            await self.registry.save_map(archived.url, published_at)
        except UpstreamFailure as e:
            # the new latest is already out; only the history entry is missing
            logging.error(f"Could not record archived map {archived.url}: {e}")

    async def run(self) -> Optional[str]:
        """Generate and publish a new map; returns its URL, or None if a run was already in progress."""
        if self._lock.locked():
            logging.warning("Map generation already running, skipping this trigger")
            return None

        async with self._lock:
            started = self.clock()
            logging.info(f"Generating air quality map at {started.isoformat()}")
            maps = await self.build()
            html = self.renderer(maps)

            archived = await self._archive_latest()
            published = await self.artifact_store.publish(html)
            if archived is not None:
                await self._record(*archived)
            logging.info(f"Published air quality map {published.url} "
                         f"({len(maps.general)} readings, {(self.clock() - started) / timedelta(seconds=1):.1f}s)")
            return published.url
