#file: airquality/scoring.py

import math
from datetime import datetime
from typing import Dict, Iterable, Sequence, Tuple

from airquality.errors import EmptyGasSet, InvalidMeasurement
from airquality.models import (AirQualityReading, GasKind, GasReading, GasThresholds, Measurement,
                               QualityLevel)

# ppm boundaries per gas; everything above "bad" is clamped to the top of the scale
GAS_PPM_THRESHOLDS: Dict[GasKind, GasThresholds] = {
    GasKind.CO: GasThresholds(good=9, regular=12, bad=20),
    GasKind.NO2: GasThresholds(good=0.053, regular=0.1, bad=0.2),
    GasKind.O3: GasThresholds(good=0.05, regular=0.1, bad=0.2),
}

# Gas-independent severity scale. Also the intensity contract for map renderers.
SEVERITY_THRESHOLDS = GasThresholds(good=20, regular=60, bad=100)


def _check_thresholds() -> None:
    missing = set(GasKind) - set(GAS_PPM_THRESHOLDS)
    if missing:
        raise RuntimeError(f"No ppm thresholds configured for {sorted(g.value for g in missing)}")
    for gas, limits in GAS_PPM_THRESHOLDS.items():
        if not 0 < limits.good < limits.regular < limits.bad:
            raise RuntimeError(f"Thresholds for {gas.value} must be strictly increasing")


_check_thresholds()


def _check_value(value: float, what: str) -> None:
    if value is None or not math.isfinite(value) or value < 0:
        raise InvalidMeasurement(f"{what} must be a finite number >= 0, got {value!r}")


def _classify(value: float, limits: GasThresholds) -> QualityLevel:
    if value <= limits.good:
        return QualityLevel.GOOD
    if value <= limits.regular:
        return QualityLevel.REGULAR
    return QualityLevel.BAD


def quality_from_ppm(gas: GasKind, ppm: float) -> QualityLevel:
    """Classify a ppm value; a value exactly on a boundary gets the better level."""
    _check_value(ppm, f"{gas.value} ppm")
    return _classify(ppm, GAS_PPM_THRESHOLDS[gas])


def quality_from_proportional_value(value: float) -> QualityLevel:
    """Classify a severity that is not tied to a single gas, e.g. an average."""
    _check_value(value, "proportional value")
    return _classify(value, SEVERITY_THRESHOLDS)


def proportional_from_ppm(gas: GasKind, ppm: float) -> int:
    """
    Map a ppm value onto the common 0-100 severity scale.

    Each quality band is scaled linearly onto its severity band:
    [0, good] -> [0, 20], (good, regular] -> (20, 60], (regular, bad] -> (60, 100].
    Values above "bad" are clamped to 100. The continuous severity is floored
    once, so the band seams land exactly on 20, 60 and 100.
    """
    _check_value(ppm, f"{gas.value} ppm")
    limits = GAS_PPM_THRESHOLDS[gas]
    scale = SEVERITY_THRESHOLDS

    if ppm >= limits.bad:
        return int(scale.bad)

    if ppm <= limits.good:
        low_ppm, high_ppm, low_sev, high_sev = 0.0, limits.good, 0.0, scale.good
    elif ppm <= limits.regular:
        low_ppm, high_ppm, low_sev, high_sev = limits.good, limits.regular, scale.good, scale.regular
    else:
        low_ppm, high_ppm, low_sev, high_sev = limits.regular, limits.bad, scale.regular, scale.bad

    severity = low_sev + (ppm - low_ppm) / (high_ppm - low_ppm) * (high_sev - low_sev)
    # float noise such as 19.999999999 must not drop a full unit at a seam
    return int(math.floor(round(severity, 9)))


def score_gas(gas: GasKind, ppm: float, timestamp: datetime) -> GasReading:
    return GasReading(
        gas=gas,
        proportional_value=proportional_from_ppm(gas, ppm),
        quality_level=quality_from_ppm(gas, ppm),
        ppm_value=ppm,
        timestamp=timestamp,
    )


def worst_of(readings: Sequence[GasReading]) -> GasReading:
    """Return the reading with the highest severity; the first one wins a tie."""
    if not readings:
        raise EmptyGasSet("Cannot pick the worst gas out of an empty set")
    return max(readings, key=lambda reading: reading.proportional_value)


def _as_reading(gas_reading: GasReading) -> AirQualityReading:
    return AirQualityReading(
        timestamp=gas_reading.timestamp,
        quality_level=gas_reading.quality_level,
        proportional_value=gas_reading.proportional_value,
        worst_gas=gas_reading.gas,
        ppm_value=gas_reading.ppm_value,
    )


def reading_from_gas_values(o3: float, co: float, no2: float, timestamp: datetime) -> AirQualityReading:
    """Score all three gases and report the worst one."""
    gas_readings = [
        score_gas(GasKind.O3, o3, timestamp),
        score_gas(GasKind.CO, co, timestamp),
        score_gas(GasKind.NO2, no2, timestamp),
    ]
    return _as_reading(worst_of(gas_readings))


def reading_from_measurement(measurement: Measurement) -> AirQualityReading:
    return reading_from_gas_values(measurement.o3_value, measurement.co_value,
                                   measurement.no2_value, measurement.timestamp)


def reading_from_single_gas(gas: GasKind, ppm: float, timestamp: datetime) -> AirQualityReading:
    return _as_reading(score_gas(gas, ppm, timestamp))


def gas_value(measurement: Measurement, gas: GasKind) -> float:
    if gas is GasKind.O3:
        return measurement.o3_value
    if gas is GasKind.CO:
        return measurement.co_value
    return measurement.no2_value


def gas_averages(measurements: Iterable[Measurement]) -> Tuple[float, float, float]:
    """Average O3, CO and NO2 over a non-empty set of measurements."""
    measurements = list(measurements)
    if not measurements:
        raise ValueError("Cannot average an empty set of measurements")
    count = len(measurements)
    return (
        sum(m.o3_value for m in measurements) / count,
        sum(m.co_value for m in measurements) / count,
        sum(m.no2_value for m in measurements) / count,
    )
