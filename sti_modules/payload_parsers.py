"""
STI Payload Parsers - Topic routing and per-protocol payload decoding.

Classifies an MQTT topic into a protocol family and decodes the JSON payload
into a device descriptor plus canonical measurements.

Supported protocol families (first match wins):
- Air quality report: topic contains fosensor, iaq or air
  {"Timestamp": "2025-12-31 23:59:49", "DeviceID": "...", "Model": "WEEL",
   "VOC": 373, "CO2": 776, "Temp": 21.1, "Humidity": 16.3, ...}
- Single-phase energy reading: bridge/<bridge>/<circuit>/reading
  {"sensor_sn": "...", "type": "PAN12", "ts": 1764543602, "current_A": 1.582, "rssi_dBm": -62.0}
- Three-phase energy reading: topic contains MSCHN
  {"ID": "...", "time": "2025-12-03 22:00:00", "I1": "7.18", ..., "V3": "222.75"}

Broker-reserved topics ($SYS/...) are never routed.
"""

from __future__ import annotations

import datetime
import enum
import re
import typing

from sti_modules import metric_catalog, sti_tools
from sti_modules.sti_tools import DeviceDescriptor

EPOCH_MS_THRESHOLD: int = 10**12
# The store rejects instants before the Unix epoch.
EARLIEST_INSTANT: datetime.datetime = datetime.datetime(1970, 1, 1, tzinfo=datetime.UTC)
LATEST_INSTANT: datetime.datetime = datetime.datetime(9999, 12, 31, tzinfo=datetime.UTC)

_BRIDGE_READING_PATTERN: re.Pattern[str] = re.compile(r"^bridge/([^/]+)/([^/]+)/reading$")
_GROUP_KEY_PATTERN: re.Pattern[str] = re.compile(r"^([A-Za-z]+)")
_AIR_QUALITY_KEYWORDS: tuple[str, ...] = ("fosensor", "iaq", "air")
_THREE_PHASE_KEYWORDS: tuple[str, ...] = ("mschn",)


class Route(enum.Enum):
    AIR_QUALITY = "air_quality"
    SINGLE_PHASE = "single_phase"
    THREE_PHASE = "three_phase"
    NONE = "none"


def is_reserved_topic(topic: str) -> bool:
    """Broker-reserved topics start with '$' (e.g. $SYS/broker/uptime)."""
    return topic.startswith("$")


def route_topic(topic: str) -> Route:
    """Classify topic. Air quality wins over bridge reading, which wins over three-phase."""
    if is_reserved_topic(topic):
        return Route.NONE

    lowered = topic.lower()
    if any(keyword in lowered for keyword in _AIR_QUALITY_KEYWORDS):
        return Route.AIR_QUALITY
    if _BRIDGE_READING_PATTERN.match(topic):
        return Route.SINGLE_PHASE
    if any(keyword in lowered for keyword in _THREE_PHASE_KEYWORDS):
        return Route.THREE_PHASE
    return Route.NONE


class MeasuredPoint(typing.NamedTuple):
    """Canonical measurement before device identity is known."""

    timestamp: str
    metric: str
    value: float
    unit: str | None
    labels: dict[str, str]
    quality: str


class ParseResult(typing.NamedTuple):
    descriptor: DeviceDescriptor
    points: list[MeasuredPoint]


def normalize_timestamp(value: typing.Any, now: datetime.datetime | None = None) -> str:  # noqa: ANN401
    """
    Normalize a device timestamp to a strict ISO instant (UTC, milliseconds, Z suffix).

    - "2025-12-31 23:59:49" and other ISO-like strings: space separator accepted, naive means UTC
    - numbers and all-digit strings: epoch milliseconds above 10**12, epoch seconds otherwise
    - missing, bool, unparseable or out-of-range values: ingestion time
    - instants before 1970-01-01T00:00:00Z or after 9999-12-31T00:00:00Z count as out of range

    Does not throw exceptions.
    """
    fallback = sti_tools.iso_instant(now or sti_tools.utc_now())

    if value is None or isinstance(value, bool):
        return fallback

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return fallback
        if text.isdigit():
            try:
                value = int(text)
            except ValueError:
                return fallback
        else:
            try:
                dt = datetime.datetime.fromisoformat(text.replace(" ", "T", 1))
            except ValueError:
                return fallback
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=datetime.UTC)
            return sti_tools.iso_instant(dt) if EARLIEST_INSTANT <= dt <= LATEST_INSTANT else fallback

    if isinstance(value, int | float):
        try:
            seconds = value / 1000 if value > EPOCH_MS_THRESHOLD else value
            dt = datetime.datetime.fromtimestamp(seconds, tz=datetime.UTC)
        except (OverflowError, OSError, ValueError):
            return fallback
        return sti_tools.iso_instant(dt) if EARLIEST_INSTANT <= dt <= LATEST_INSTANT else fallback

    return fallback


def _first_present(payload: dict[str, typing.Any], aliases: typing.Sequence[str]) -> typing.Any:  # noqa: ANN401
    for alias in aliases:
        value = payload.get(alias)
        if value is not None and value != "":
            return value
    return None


def _external_id(payload: dict[str, typing.Any], aliases: typing.Sequence[str]) -> str | None:
    value = _first_present(payload, aliases)
    if value is None or isinstance(value, bool | dict | list):
        return None
    return str(value).strip() or None


def _extract_points(
    payload: dict[str, typing.Any],
    fields: typing.Sequence[str],
    timestamp: str,
    labels: dict[str, str],
) -> list[MeasuredPoint]:
    """Filter and canonicalize each field. Invalid or unknown fields are skipped, siblings kept."""
    points: list[MeasuredPoint] = []
    seen: set[str] = set()

    for field in fields:
        if field not in payload:
            continue

        value = metric_catalog.coerce_valid_value(payload[field])
        if value is None:
            sti_tools.log_debug(f"parser: invalid value field={field} value={payload[field]!r}")
            continue

        metric_spec = metric_catalog.canonicalize(field)
        if metric_spec is None or metric_spec.canonical in seen:
            continue

        seen.add(metric_spec.canonical)
        quality = metric_catalog.assess_quality(metric_spec.canonical, value)
        if quality != metric_catalog.QUALITY_GOOD:
            sti_tools.log_debug(f"parser: implausible value field={field} value={value} quality={quality}")
        points.append(
            MeasuredPoint(timestamp, metric_spec.canonical, value, metric_spec.unit, dict(labels), quality)
        )

    return points


def _broker(payload: dict[str, typing.Any], default_broker: str) -> str:
    broker = payload.get("Broker")
    return broker if isinstance(broker, str) and broker else default_broker


# --------------------- AIR QUALITY -------------------------------------------

_AIR_QUALITY_ID_ALIASES: tuple[str, ...] = ("DeviceID", "device_id", "deviceId", "ID")
_AIR_QUALITY_TS_ALIASES: tuple[str, ...] = ("Timestamp", "timestamp", "ts")
_AIR_QUALITY_FIELDS: tuple[str, ...] = (
    "CO2", "co2",
    "VOC", "voc", "TVOC",
    "Temp", "temp", "temperature",
    "Humidity", "humidity", "Hum",
    "O3", "o3",
    "CO", "co",
    "PM2.5", "PM25", "pm25",
    "PM10", "pm10",
    "Radon",
    "noise", "Noise",
    "lux", "Lux",
)  # fmt: skip


def _mac_address(payload: dict[str, typing.Any]) -> str | None:
    """MAC is either a plain string or an object like {"address": "..."}."""
    mac = payload.get("MAC")
    if isinstance(mac, dict):
        mac = mac.get("address")
    if isinstance(mac, str) and mac:
        return mac
    return None


def parse_air_quality(
    topic: str,
    payload: dict[str, typing.Any],
    default_broker: str,
    now: datetime.datetime | None = None,
) -> ParseResult | None:
    mac = _mac_address(payload)
    external_id = _external_id(payload, _AIR_QUALITY_ID_ALIASES) or mac
    if not external_id:
        sti_tools.log_warning(f"parser: air_quality payload missing device id topic={topic}")
        return None

    model = payload.get("Model")
    if not isinstance(model, str) or not model:
        model = "UNKNOWN"
    descriptor: DeviceDescriptor = {
        "external_id": external_id,
        "broker": _broker(payload, default_broker),
        "model": model,
        "device_type": "air_quality",
        "mac": mac,
        "rssi": None,
    }

    labels = {"model": model}
    if mac:
        labels["mac"] = mac

    timestamp = normalize_timestamp(_first_present(payload, _AIR_QUALITY_TS_ALIASES), now)
    return ParseResult(descriptor, _extract_points(payload, _AIR_QUALITY_FIELDS, timestamp, labels))


# --------------------- SINGLE PHASE ------------------------------------------

_SINGLE_PHASE_ID_ALIASES: tuple[str, ...] = ("sensor_sn", "device_id", "DeviceID")
_SINGLE_PHASE_TS_ALIASES: tuple[str, ...] = ("ts", "Timestamp", "timestamp")
_SINGLE_PHASE_FIELDS: tuple[str, ...] = ("current_A", "current_a", "power_kw", "energy_kwh")


def _bridge_labels(topic: str) -> dict[str, str]:
    match = _BRIDGE_READING_PATTERN.match(topic)
    if not match:
        return {}
    bridge_name, circuit_key = match.group(1), match.group(2)
    group_match = _GROUP_KEY_PATTERN.match(circuit_key)
    return {
        "bridge_name": bridge_name,
        "circuit_key": circuit_key,
        "group_key": group_match.group(1) if group_match else circuit_key,
    }


def parse_single_phase(
    topic: str,
    payload: dict[str, typing.Any],
    default_broker: str,
    now: datetime.datetime | None = None,
) -> ParseResult | None:
    external_id = _external_id(payload, _SINGLE_PHASE_ID_ALIASES)
    if not external_id:
        sti_tools.log_warning(f"parser: single_phase payload missing sensor_sn topic={topic}")
        return None

    model = payload.get("type")
    if not isinstance(model, str) or not model:
        model = "PAN12"
    descriptor: DeviceDescriptor = {
        "external_id": external_id,
        "broker": _broker(payload, default_broker),
        "model": model,
        "device_type": "energy_monitor",
        "mac": None,
        "rssi": metric_catalog.coerce_valid_value(payload.get("rssi_dBm")),
    }

    labels = _bridge_labels(topic)
    labels["sensor_sn"] = external_id

    timestamp = normalize_timestamp(_first_present(payload, _SINGLE_PHASE_TS_ALIASES), now)
    return ParseResult(descriptor, _extract_points(payload, _SINGLE_PHASE_FIELDS, timestamp, labels))


# --------------------- THREE PHASE -------------------------------------------

_THREE_PHASE_ID_ALIASES: tuple[str, ...] = ("ID", "DeviceID", "device_id")
_THREE_PHASE_TS_ALIASES: tuple[str, ...] = ("time", "Timestamp", "timestamp", "ts")
_PHASE_PAIRS: tuple[tuple[str, str], ...] = (("I1", "V1"), ("I2", "V2"), ("I3", "V3"))
_THREE_PHASE_FIELDS: tuple[str, ...] = (
    "I1", "I2", "I3",
    "V1", "V2", "V3",
    "Total Active Energy Import",
    "Total Active Energy Export",
    "Power Factor",
    "Frequency",
)  # fmt: skip


def estimate_power_kw(payload: dict[str, typing.Any]) -> float | None:
    """
    Total active power estimate, sum(I * V) / 1000, assuming unity power factor.

    Returns None unless all six phase values are valid.
    """
    total_w = 0.0
    for current_field, voltage_field in _PHASE_PAIRS:
        current = metric_catalog.coerce_valid_value(payload.get(current_field))
        voltage = metric_catalog.coerce_valid_value(payload.get(voltage_field))
        if current is None or voltage is None:
            return None
        total_w += current * voltage
    return round(total_w / 1000, 3)


def parse_three_phase(
    topic: str,
    payload: dict[str, typing.Any],
    default_broker: str,
    now: datetime.datetime | None = None,
    power_estimate: bool = True,
) -> ParseResult | None:
    external_id = _external_id(payload, _THREE_PHASE_ID_ALIASES)
    if not external_id:
        sti_tools.log_warning(f"parser: three_phase payload missing ID topic={topic}")
        return None

    descriptor: DeviceDescriptor = {
        "external_id": external_id,
        "broker": _broker(payload, default_broker),
        "model": "MSCHN",
        "device_type": "energy_monitor",
        "mac": None,
        "rssi": None,
    }

    labels = {"mschn_id": external_id}
    timestamp = normalize_timestamp(_first_present(payload, _THREE_PHASE_TS_ALIASES), now)
    points = _extract_points(payload, _THREE_PHASE_FIELDS, timestamp, labels)

    if power_estimate:
        power_kw = estimate_power_kw(payload)
        if power_kw is not None and metric_catalog.coerce_valid_value(power_kw) is not None:
            metric_spec = metric_catalog.POWER_ESTIMATE
            estimate_labels = {**labels, "estimate": "unity_power_factor"}
            quality = metric_catalog.assess_quality(metric_spec.canonical, power_kw)
            points.append(
                MeasuredPoint(timestamp, metric_spec.canonical, power_kw, metric_spec.unit, estimate_labels, quality)
            )

    return ParseResult(descriptor, points)


def parse_payload(
    route: Route,
    topic: str,
    payload: typing.Any,  # noqa: ANN401
    default_broker: str,
    *,
    power_estimate: bool = True,
    now: datetime.datetime | None = None,
) -> ParseResult | None:
    """
    Decode a JSON payload with the parser selected by route.

    Returns None for Route.NONE, non-object payloads and payloads without a device id.
    Points whose metric is not in the canonical catalog are dropped.
    """
    if route is Route.NONE:
        return None

    if not isinstance(payload, dict):
        sti_tools.log_warning(f"parser: payload is not an object route={route.value} topic={topic}")
        return None

    match route:
        case Route.AIR_QUALITY:
            result = parse_air_quality(topic, payload, default_broker, now)
        case Route.SINGLE_PHASE:
            result = parse_single_phase(topic, payload, default_broker, now)
        case Route.THREE_PHASE:
            result = parse_three_phase(topic, payload, default_broker, now, power_estimate)
        case _:
            msg = f"Unknown route: {route}"
            raise NotImplementedError(msg)

    if result is None:
        return None

    points = [point for point in result.points if point.metric in metric_catalog.CANONICAL_METRICS]
    return ParseResult(result.descriptor, points)
