#file: airquality/config.py

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    influxdb_url: str
    influxdb_token: str
    influxdb_org: str
    influxdb_bucket: str
    redis_url: str = "redis://localhost:6379/0"
    map_output_dir: str = "maps"
    map_base_url: str = "/maps/files"
    map_interval_minutes: int = Field(30, gt=0)
    map_center_lat: float = 39.47
    map_center_lon: float = -0.376
    timezone: str = "UTC"


def load_settings() -> Settings:
    """Read settings from the environment (and a .env file, if present)."""
    load_dotenv()

    influx = {
        "influxdb_url": os.getenv("INFLUXDB_URL"),
        "influxdb_token": os.getenv("INFLUXDB_TOKEN"),
        "influxdb_org": os.getenv("INFLUXDB_ORG"),
        "influxdb_bucket": os.getenv("INFLUXDB_BUCKET"),
    }
    # Validate environment variables
    if not all(influx.values()):
        raise ValueError("Missing required InfluxDB environment variables")

    optional = {
        "redis_url": os.getenv("REDIS_URL"),
        "map_output_dir": os.getenv("MAP_OUTPUT_DIR"),
        "map_base_url": os.getenv("MAP_BASE_URL"),
        "map_interval_minutes": os.getenv("MAP_INTERVAL_MINUTES"),
        "map_center_lat": os.getenv("MAP_CENTER_LAT"),
        "map_center_lon": os.getenv("MAP_CENTER_LON"),
        "timezone": os.getenv("TIMEZONE"),
    }
    return Settings(**influx, **{k: v for k, v in optional.items() if v is not None})
