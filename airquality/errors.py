#file: airquality/errors.py


class AirQualityError(Exception):
    """Base class for errors raised by the scoring and aggregation engine."""


class InvalidMeasurement(AirQualityError, ValueError):
    """A gas value or coordinate is negative, NaN or otherwise unusable."""


class EmptyGasSet(AirQualityError):
    """Worst-gas selection was asked to choose from nothing."""


class UpstreamFailure(AirQualityError):
    """The measurement store or map registry could not be reached."""
