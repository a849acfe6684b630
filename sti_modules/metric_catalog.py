"""
STI Metric Catalog - Canonical metric vocabulary and value validity filter.

Maps hardware field names (as emitted by device firmwares) to a stable,
protocol-independent metric name and unit. Any metric that is not in the
catalog never reaches the telemetry buffer.
"""

from __future__ import annotations

import math
import typing

# Open exclusion band for hardware error/placeholder codes, e.g. -555555.
SENTINEL_MIN: float = -100_000.0
SENTINEL_MAX: float = 100_000_000.0


class MetricSpec(typing.NamedTuple):
    canonical: str
    unit: str | None


METRIC_CATALOG: typing.Mapping[str, MetricSpec] = {
    # IAQ
    "CO2": MetricSpec("iaq.co2", "ppm"),
    "co2": MetricSpec("iaq.co2", "ppm"),
    "VOC": MetricSpec("iaq.voc", "µg/m³"),
    "voc": MetricSpec("iaq.voc", "µg/m³"),
    "TVOC": MetricSpec("iaq.voc", "µg/m³"),
    "PM2.5": MetricSpec("iaq.pm25", "µg/m³"),
    "PM25": MetricSpec("iaq.pm25", "µg/m³"),
    "pm25": MetricSpec("iaq.pm25", "µg/m³"),
    "PM10": MetricSpec("iaq.pm10", "µg/m³"),
    "pm10": MetricSpec("iaq.pm10", "µg/m³"),
    "CO": MetricSpec("iaq.co", "ppm"),
    "co": MetricSpec("iaq.co", "ppm"),
    "O3": MetricSpec("iaq.o3", "ppb"),
    "o3": MetricSpec("iaq.o3", "ppb"),
    "Radon": MetricSpec("iaq.radon", "Bq/m³"),
    # Environment
    "Temp": MetricSpec("env.temperature", "°C"),
    "temp": MetricSpec("env.temperature", "°C"),
    "temperature": MetricSpec("env.temperature", "°C"),
    "Humidity": MetricSpec("env.humidity", "%"),
    "humidity": MetricSpec("env.humidity", "%"),
    "Hum": MetricSpec("env.humidity", "%"),
    "noise": MetricSpec("env.noise", "dB"),
    "Noise": MetricSpec("env.noise", "dB"),
    "lux": MetricSpec("env.illuminance", "lx"),
    "Lux": MetricSpec("env.illuminance", "lx"),
    # Energy
    "current_A": MetricSpec("energy.current_a", "A"),
    "current_a": MetricSpec("energy.current_a", "A"),
    "I1": MetricSpec("energy.current_l1", "A"),
    "I2": MetricSpec("energy.current_l2", "A"),
    "I3": MetricSpec("energy.current_l3", "A"),
    "V1": MetricSpec("energy.voltage_l1", "V"),
    "V2": MetricSpec("energy.voltage_l2", "V"),
    "V3": MetricSpec("energy.voltage_l3", "V"),
    "power_kw": MetricSpec("energy.power_kw", "kW"),
    "energy_kwh": MetricSpec("energy.active_import_kwh", "kWh"),
    "Total Active Energy Import": MetricSpec("energy.active_import_kwh", "kWh"),
    "Total Active Energy Export": MetricSpec("energy.active_export_kwh", "kWh"),
    "Power Factor": MetricSpec("energy.power_factor", None),
    "Frequency": MetricSpec("energy.frequency_hz", "Hz"),
    # Water
    "flow_rate": MetricSpec("water.flow_rate", "L/min"),
    "total_volume": MetricSpec("water.consumption", "m³"),
}

CANONICAL_METRICS: frozenset[str] = frozenset(metric_spec.canonical for metric_spec in METRIC_CATALOG.values())

POWER_ESTIMATE: MetricSpec = METRIC_CATALOG["power_kw"]

QUALITY_GOOD: str = "good"
QUALITY_SUSPECT: str = "suspect"

# Inclusive plausibility ranges. Readings outside are kept but flagged suspect.
PLAUSIBLE_RANGES: typing.Mapping[str, tuple[float, float]] = {
    "iaq.co2": (0, 10_000),
    "iaq.voc": (0, 60_000),
    "iaq.pm25": (0, 1_000),
    "iaq.pm10": (0, 1_000),
    "iaq.co": (0, 1_000),
    "iaq.o3": (0, 500),
    "env.temperature": (-40, 85),
    "env.humidity": (0, 100),
    "energy.current_a": (0, 1_000),
    "energy.current_l1": (0, 10_000),
    "energy.current_l2": (0, 10_000),
    "energy.current_l3": (0, 10_000),
    "energy.voltage_l1": (0, 500),
    "energy.voltage_l2": (0, 500),
    "energy.voltage_l3": (0, 500),
    "energy.active_import_kwh": (0, SENTINEL_MAX),
    "energy.active_export_kwh": (0, SENTINEL_MAX),
}


def canonicalize(raw_field: str) -> MetricSpec | None:
    """Look up a hardware field name. Returns None for unknown fields."""
    return METRIC_CATALOG.get(raw_field)


def coerce_valid_value(raw: typing.Any) -> float | None:  # noqa: ANN401
    """
    Coerce a raw payload value to float if it is a valid reading.

    Valid means: not None, not a bool, convertible to a finite float
    (numeric strings accepted), strictly inside (SENTINEL_MIN, SENTINEL_MAX).
    Returns None otherwise. Does not throw exceptions.
    """
    if raw is None or isinstance(raw, bool):
        return None

    try:
        if isinstance(raw, int | float):
            value = float(raw)
        elif isinstance(raw, str):
            value = float(raw.strip())
        else:
            return None
    except (ValueError, OverflowError):
        return None

    if not math.isfinite(value):
        return None
    if not SENTINEL_MIN < value < SENTINEL_MAX:
        return None
    return value


def assess_quality(metric: str, value: float) -> str:
    """QUALITY_SUSPECT when value lies outside the plausible range of metric, QUALITY_GOOD otherwise."""
    bounds = PLAUSIBLE_RANGES.get(metric)
    if bounds is None:
        return QUALITY_GOOD
    low, high = bounds
    return QUALITY_GOOD if low <= value <= high else QUALITY_SUSPECT
