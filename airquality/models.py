#file: airquality/models.py

from datetime import date, datetime
from enum import Enum
from typing import List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class GasKind(str, Enum):
    O3 = "O3"
    CO = "CO"
    NO2 = "NO2"


class QualityLevel(str, Enum):
    GOOD = "Good"
    REGULAR = "Regular"
    BAD = "Bad"

    @property
    def rank(self) -> int:
        """Position in the Good < Regular < Bad ordering."""
        return list(QualityLevel).index(self)


class GasThresholds(NamedTuple):
    """Upper bound of each quality level, in the gas's own unit (ppm)."""
    good: float
    regular: float
    bad: float


class Measurement(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str = Field(..., description="Identifier of the sensor node")
    user_id: Optional[str] = Field(None, description="Owner of the node when the sample was taken")
    timestamp: datetime = Field(..., description="Sample time (timezone aware)")
    latitude: float = Field(..., description="Latitude in decimal degrees")
    longitude: float = Field(..., description="Longitude in decimal degrees")
    o3_value: float = Field(..., description="O3 concentration (ppm)")
    co_value: float = Field(..., description="CO concentration (ppm)")
    no2_value: float = Field(..., description="NO2 concentration (ppm)")


class TimeRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime = Field(..., description="Inclusive start")
    end: datetime = Field(..., description="Exclusive end")

    @model_validator(mode="after")
    def check_order(self) -> "TimeRange":
        if self.start > self.end:
            raise ValueError("start must be <= end")
        return self


class GasReading(BaseModel):
    gas: GasKind
    proportional_value: int = Field(..., ge=0, le=100, description="Severity on the 0-100 scale")
    quality_level: QualityLevel
    ppm_value: float = Field(..., ge=0)
    timestamp: datetime


class AirQualityReading(BaseModel):
    timestamp: datetime = Field(..., description="Sample time or bucket start")
    quality_level: Optional[QualityLevel] = Field(None, description="None when the interval has no data")
    proportional_value: Optional[int] = Field(None, ge=0, le=100)
    worst_gas: Optional[GasKind] = None
    ppm_value: Optional[float] = None

    @classmethod
    def empty(cls, timestamp: datetime) -> "AirQualityReading":
        return cls(timestamp=timestamp)

    @property
    def has_data(self) -> bool:
        return self.proportional_value is not None


class GeolocatedAirQualityReading(AirQualityReading):
    latitude: float
    longitude: float


class AirQualityReadingsInfo(BaseModel):
    readings: List[AirQualityReading] = Field(default_factory=list)
    overall_quality: Optional[QualityLevel] = None


class MapsGeolocatedReadings(BaseModel):
    general: List[GeolocatedAirQualityReading] = Field(default_factory=list)
    o3: List[GeolocatedAirQualityReading] = Field(default_factory=list)
    co: List[GeolocatedAirQualityReading] = Field(default_factory=list)
    no2: List[GeolocatedAirQualityReading] = Field(default_factory=list)


class DashboardData(BaseModel):
    last_air_quality_reading: AirQualityReading
    today_distance: int = Field(..., ge=0, description="Distance travelled today in meters")
    air_quality_readings_info: AirQualityReadingsInfo


class HeatmapPoint(NamedTuple):
    latitude: float
    longitude: float
    intensity: float


class MapArtifact(BaseModel):
    name: str
    url: str
    published_at: datetime


class HistoricMap(BaseModel):
    url: str
    timestamp: datetime


class AvailableDate(BaseModel):
    date: date
    times: List[str] = Field(default_factory=list)


class CalendarMetadata(BaseModel):
    first_available_year: Optional[int] = None
    year: int
    month: int
    available_dates: List[AvailableDate] = Field(default_factory=list)
