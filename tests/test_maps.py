"""
Tests for heatmap rendering, artifact storage and the map builder.
"""

import asyncio
import os
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytz

from airquality.errors import UpstreamFailure
from airquality.maps import LATEST_NAME, LocalArtifactStore, MapDataBuilder, archive_name, heatmap_points, \
    intensity, render_html
from airquality.models import GeolocatedAirQualityReading, MapsGeolocatedReadings
from tests.conftest import T0, FakeRegistry


def located(value, lat=39.47, lon=-0.376) -> GeolocatedAirQualityReading:
    return GeolocatedAirQualityReading(timestamp=T0, proportional_value=value, latitude=lat, longitude=lon)


def fake_engine(maps=None) -> AsyncMock:
    engine = AsyncMock()
    engine.maps_geolocated_readings_in_range.return_value = maps or MapsGeolocatedReadings()
    return engine


def set_mtime(path: str, moment: datetime) -> None:
    stamp = moment.timestamp()
    os.utime(path, (stamp, stamp))


class TestHeatmap:

    @pytest.mark.parametrize("value, expected", [(0, 0.3), (20, 0.3), (21, 0.6), (60, 0.6), (61, 1.0), (100, 1.0)])
    def test_intensity_bands(self, value, expected):
        assert intensity(value) == expected

    def test_points_skip_readings_without_data(self):
        points = heatmap_points([located(10, 1.0, 2.0), located(None), located(70, 3.0, 4.0)])
        assert [(p.latitude, p.longitude, p.intensity) for p in points] == [(1.0, 2.0, 0.3), (3.0, 4.0, 1.0)]

    def test_archive_name_is_url_safe(self):
        assert archive_name(pytz.utc.localize(datetime(2024, 5, 15, 9, 30, 5, 123456))) == "2024-05-15T09-30-05-123Z"

    def test_render_html_has_all_layers(self):
        maps = MapsGeolocatedReadings(general=[located(10)], o3=[located(30)], co=[located(70)], no2=[])
        html = render_html(maps, center=(40.0, -3.7))
        assert html.lstrip().lower().startswith("<html")
        assert "densitymapbox" in html
        for label in ("General", "CO"):
            assert label in html


class TestLocalArtifactStore:

    @pytest.mark.asyncio
    async def test_nothing_published_yet(self, tmp_path):
        assert await LocalArtifactStore(str(tmp_path)).find_latest() is None

    @pytest.mark.asyncio
    async def test_publish_replaces_latest(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path), "/maps/files/")
        await store.publish("<html>one</html>")
        published = await store.publish("<html>two</html>")

        assert published.name == LATEST_NAME
        assert published.url == "/maps/files/latest.html"
        assert (tmp_path / "latest.html").read_text(encoding="utf-8") == "<html>two</html>"
        assert not [p for p in os.listdir(tmp_path) if p.endswith(".tmp")]

    @pytest.mark.asyncio
    async def test_archive_copies_latest(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path), "/maps/files")
        latest = await store.publish("<html>old</html>")
        set_mtime(str(tmp_path / "latest.html"), T0)
        latest = await store.find_latest()

        archived = await store.archive(latest, "2024-05-15T09-30-00Z")

        assert archived.url == "/maps/files/2024-05-15T09-30-00Z.html"
        assert archived.published_at == T0
        assert await store.find_latest() is not None
        assert (tmp_path / "2024-05-15T09-30-00Z.html").read_text(encoding="utf-8") == "<html>old</html>"

    @pytest.mark.asyncio
    async def test_archive_never_overwrites(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path))
        (tmp_path / "taken.html").write_text("keep", encoding="utf-8")
        latest = await store.publish("<html>new</html>")

        with pytest.raises(FileExistsError):
            await store.archive(latest, "taken")
        assert (tmp_path / "taken.html").read_text(encoding="utf-8") == "keep"


class TestMapDataBuilder:

    @pytest.mark.asyncio
    async def test_first_run_publishes_without_archiving(self, tmp_path, fixed_clock):
        store = LocalArtifactStore(str(tmp_path), "/maps/files")
        registry = FakeRegistry()
        builder = MapDataBuilder(fake_engine(), store, registry, renderer=lambda maps: "<html>1</html>",
                                 clock=fixed_clock)

        assert await builder.run() == "/maps/files/latest.html"
        assert registry.maps == []
        assert sorted(os.listdir(tmp_path)) == ["latest.html"]

    @pytest.mark.asyncio
    async def test_queries_the_last_window(self, tmp_path, fixed_clock):
        engine = fake_engine()
        builder = MapDataBuilder(engine, LocalArtifactStore(str(tmp_path)), renderer=lambda maps: "",
                                 window_minutes=30, clock=fixed_clock)
        await builder.run()

        time_range = engine.maps_geolocated_readings_in_range.await_args.args[0]
        assert time_range.end == fixed_clock()
        assert time_range.end - time_range.start == timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_previous_map_is_archived_then_replaced(self, tmp_path, fixed_clock):
        store = LocalArtifactStore(str(tmp_path), "/maps/files")
        registry = FakeRegistry()
        pages = iter(["<html>1</html>", "<html>2</html>"])
        builder = MapDataBuilder(fake_engine(), store, registry, renderer=lambda maps: next(pages),
                                 clock=fixed_clock)

        await builder.run()
        previous = T0 + timedelta(hours=10)
        set_mtime(str(tmp_path / "latest.html"), previous)
        await builder.run()

        archived = tmp_path / "2024-05-15T10-00-00-000Z.html"
        assert archived.read_text(encoding="utf-8") == "<html>1</html>"
        assert (tmp_path / "latest.html").read_text(encoding="utf-8") == "<html>2</html>"
        assert [(m.url, m.timestamp) for m in registry.maps] == [("/maps/files/2024-05-15T10-00-00-000Z.html", previous)]

    @pytest.mark.asyncio
    async def test_registry_outage_still_publishes(self, tmp_path, fixed_clock):
        store = LocalArtifactStore(str(tmp_path), "/maps/files")
        await store.publish("<html>old</html>")
        set_mtime(str(tmp_path / "latest.html"), T0 + timedelta(hours=10))
        registry = AsyncMock()
        registry.save_map.side_effect = UpstreamFailure("influx down")
        builder = MapDataBuilder(fake_engine(), store, registry, renderer=lambda maps: "<html>new</html>",
                                 clock=fixed_clock)

        assert await builder.run() == "/maps/files/latest.html"

        latest = await store.find_latest()
        assert latest is not None
        assert (tmp_path / "latest.html").read_text(encoding="utf-8") == "<html>new</html>"
        assert (tmp_path / "2024-05-15T10-00-00-000Z.html").read_text(encoding="utf-8") == "<html>old</html>"
        registry.save_map.assert_awaited_once()
        assert not builder.running

    @pytest.mark.asyncio
    async def test_runs_in_the_same_instant_get_distinct_archives(self, tmp_path, fixed_clock):
        store = LocalArtifactStore(str(tmp_path), "/maps/files")
        registry = FakeRegistry()
        builder = MapDataBuilder(fake_engine(), store, registry, renderer=lambda maps: "<html></html>",
                                 clock=fixed_clock)
        published_at = T0 + timedelta(hours=10)

        for _ in range(4):
            await builder.run()
            set_mtime(str(tmp_path / "latest.html"), published_at)

        assert sorted(os.listdir(tmp_path)) == [
            "2024-05-15T10-00-00-000Z-1.html",
            "2024-05-15T10-00-00-000Z-2.html",
            "2024-05-15T10-00-00-000Z.html",
            "latest.html",
        ]
        assert len({m.url for m in registry.maps}) == 3

    @pytest.mark.asyncio
    async def test_overlapping_trigger_is_skipped(self, tmp_path, fixed_clock):
        release = asyncio.Event()

        async def slow_readings(time_range):
            await release.wait()
            return MapsGeolocatedReadings()

        engine = AsyncMock()
        engine.maps_geolocated_readings_in_range.side_effect = slow_readings
        builder = MapDataBuilder(engine, LocalArtifactStore(str(tmp_path)), renderer=lambda maps: "",
                                 clock=fixed_clock)

        first = asyncio.create_task(builder.run())
        while not builder.running:
            await asyncio.sleep(0)

        assert await builder.run() is None
        release.set()
        assert await first == "/latest.html"
        assert not builder.running
        assert engine.maps_geolocated_readings_in_range.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_render_leaves_latest_alone(self, tmp_path, fixed_clock):
        store = LocalArtifactStore(str(tmp_path))
        await store.publish("<html>keep</html>")

        def broken(maps):
            raise RuntimeError("render failed")

        builder = MapDataBuilder(fake_engine(), store, renderer=broken, clock=fixed_clock)
        with pytest.raises(RuntimeError):
            await builder.run()

        assert (tmp_path / "latest.html").read_text(encoding="utf-8") == "<html>keep</html>"
        assert not builder.running
