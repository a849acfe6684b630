"""Tests for topic routing, timestamp normalization and the protocol parsers."""

import datetime

import pytest

from sti_modules import metric_catalog
from sti_modules.payload_parsers import (
    Route,
    estimate_power_kw,
    normalize_timestamp,
    parse_payload,
    route_topic,
)

NOW = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
NOW_ISO = "2024-01-01T00:00:00.000Z"


class TestRouteTopic:
    """Ordered first-match topic classification."""

    @pytest.mark.parametrize(
        ("topic", "expected"),
        [
            ("fosensor/site1/iaq", Route.AIR_QUALITY),
            ("FOSENSOR/x", Route.AIR_QUALITY),
            ("building/IAQ/report", Route.AIR_QUALITY),
            ("bridge/b1/A1/reading", Route.SINGLE_PHASE),
            ("MSCHN/misure", Route.THREE_PHASE),
            ("site/mschn/7", Route.THREE_PHASE),
            ("bridge/b1/reading", Route.NONE),
            ("bridge/b1/A1/status", Route.NONE),
            ("bridge/b1/A1/x/reading", Route.NONE),
            ("shelly/plug/status", Route.NONE),
        ],
    )
    def test_routes(self, topic, expected):
        assert route_topic(topic) is expected

    def test_air_quality_wins_over_bridge_reading(self):
        assert route_topic("bridge/airport/A1/reading") is Route.AIR_QUALITY

    def test_bridge_reading_wins_over_three_phase(self):
        assert route_topic("bridge/mschn1/A1/reading") is Route.SINGLE_PHASE

    @pytest.mark.parametrize("topic", ["$SYS/broker/uptime", "$SYS/fosensor", "$share/g/MSCHN/1"])
    def test_reserved_topics_never_route(self, topic):
        assert route_topic(topic) is Route.NONE


class TestNormalizeTimestamp:
    """Device timestamps to strict ISO instants."""

    def test_space_separated_naive_string_is_utc(self):
        assert normalize_timestamp("2025-12-31 23:59:49", NOW) == "2025-12-31T23:59:49.000Z"

    def test_offset_string_is_converted_to_utc(self):
        assert normalize_timestamp("2025-12-31T23:59:49+02:00", NOW) == "2025-12-31T21:59:49.000Z"

    def test_z_suffix_string(self):
        assert normalize_timestamp("2025-06-01T10:00:00.250Z", NOW) == "2025-06-01T10:00:00.250Z"

    def test_epoch_seconds(self):
        assert normalize_timestamp(1700000000, NOW) == "2023-11-14T22:13:20.000Z"

    def test_epoch_milliseconds(self):
        assert normalize_timestamp(1700000000000, NOW) == "2023-11-14T22:13:20.000Z"

    def test_digit_string_is_numeric(self):
        assert normalize_timestamp("1700000000", NOW) == "2023-11-14T22:13:20.000Z"

    @pytest.mark.parametrize("value", [None, "", "yesterday", True, 10**30, {"ts": 1}])
    def test_fallback_to_now(self, value):
        assert normalize_timestamp(value, NOW) == NOW_ISO

    @pytest.mark.parametrize(
        "value",
        [-5, -1_700_000_000_000, "1969-12-31 23:59:59", "1900-01-01T00:00:00Z", "1970-01-01T01:00:00+02:00"],
    )
    def test_before_epoch_falls_back_to_now(self, value):
        assert normalize_timestamp(value, NOW) == NOW_ISO

    def test_epoch_itself_is_kept(self):
        assert normalize_timestamp(0, NOW) == "1970-01-01T00:00:00.000Z"
        assert normalize_timestamp("1970-01-01T00:00:00Z", NOW) == "1970-01-01T00:00:00.000Z"

    def test_far_future_falls_back_to_now(self):
        assert normalize_timestamp("9999-12-31T23:00:00-05:00", NOW) == NOW_ISO


class TestAirQualityParser:
    """Air quality reports."""

    def test_scenario_co2_and_temperature(self):
        result = parse_payload(
            Route.AIR_QUALITY, "fosensor/site1/iaq", {"DeviceID": "X1", "CO2": 776, "Temp": 21.1}, "broker-1", now=NOW
        )
        assert result is not None
        assert [(p.metric, p.value, p.unit) for p in result.points] == [
            ("iaq.co2", 776.0, "ppm"),
            ("env.temperature", 21.1, "°C"),
        ]
        assert result.descriptor["external_id"] == "X1"
        assert result.descriptor["device_type"] == "air_quality"
        assert result.descriptor["model"] == "UNKNOWN"
        assert result.descriptor["broker"] == "broker-1"

    def test_full_report(self):
        payload = {
            "Timestamp": "2025-12-31 23:59:49",
            "DeviceID": "******0076",
            "Model": "WEEL",
            "MAC": {"address": "aa:bb:cc:dd:ee:ff"},
            "VOC": 373,
            "CO2": 776,
            "Temp": 21.1,
            "Humidity": 16.3,
            "PM2.5": 3,
            "Broker": "mqtt.example",
        }
        result = parse_payload(Route.AIR_QUALITY, "fosensor/x", payload, "broker-1", now=NOW)
        assert result is not None
        assert {p.metric for p in result.points} == {
            "iaq.co2",
            "iaq.voc",
            "env.temperature",
            "env.humidity",
            "iaq.pm25",
        }
        assert all(p.timestamp == "2025-12-31T23:59:49.000Z" for p in result.points)
        assert result.points[0].labels == {"model": "WEEL", "mac": "aa:bb:cc:dd:ee:ff"}
        assert result.descriptor["broker"] == "mqtt.example"
        assert result.descriptor["mac"] == "aa:bb:cc:dd:ee:ff"

    def test_mac_address_used_when_no_device_id(self):
        result = parse_payload(Route.AIR_QUALITY, "fosensor/x", {"MAC": {"address": "aa:bb"}, "CO2": 400}, "b")
        assert result is not None
        assert result.descriptor["external_id"] == "aa:bb"

    def test_numeric_device_id_is_stringified(self):
        result = parse_payload(Route.AIR_QUALITY, "fosensor/x", {"DeviceID": 123, "CO2": 400}, "b")
        assert result is not None
        assert result.descriptor["external_id"] == "123"

    def test_duplicate_aliases_emit_once(self):
        result = parse_payload(Route.AIR_QUALITY, "fosensor/x", {"DeviceID": "X", "CO2": 1, "co2": 2}, "b")
        assert result is not None
        assert [(p.metric, p.value) for p in result.points] == [("iaq.co2", 1.0)]

    def test_invalid_value_does_not_drop_siblings(self):
        payload = {"DeviceID": "X", "CO2": -555555, "Temp": "n/a", "Humidity": 40}
        result = parse_payload(Route.AIR_QUALITY, "fosensor/x", payload, "b")
        assert result is not None
        assert [p.metric for p in result.points] == ["env.humidity"]

    def test_missing_device_id(self):
        assert parse_payload(Route.AIR_QUALITY, "fosensor/x", {"CO2": 776}, "b") is None

    def test_huge_integer_drops_only_that_metric(self):
        payload = {"DeviceID": "X1", "CO2": 10**400, "Temp": 21.1}
        result = parse_payload(Route.AIR_QUALITY, "fosensor/x", payload, "b")
        assert result is not None
        assert [p.metric for p in result.points] == ["env.temperature"]

    def test_quality_flags_implausible_readings(self):
        payload = {"DeviceID": "X1", "CO2": 776, "Temp": 150, "noise": 40}
        result = parse_payload(Route.AIR_QUALITY, "fosensor/x", payload, "b")
        assert result is not None
        assert {p.metric: p.quality for p in result.points} == {
            "iaq.co2": "good",
            "env.temperature": "suspect",
            "env.noise": "good",
        }


class TestSinglePhaseParser:
    """Bridge single-phase readings."""

    def test_scenario_epoch_seconds_reading(self):
        payload = {"sensor_sn": "S1", "current_A": 1.58, "ts": 1700000000}
        result = parse_payload(Route.SINGLE_PHASE, "bridge/b1/AB12/reading", payload, "broker-1", now=NOW)
        assert result is not None
        assert len(result.points) == 1
        point = result.points[0]
        assert point.metric == "energy.current_a"
        assert point.value == 1.58
        assert point.unit == "A"
        assert point.timestamp == "2023-11-14T22:13:20.000Z"
        assert point.labels == {
            "bridge_name": "b1",
            "circuit_key": "AB12",
            "group_key": "AB",
            "sensor_sn": "S1",
        }

    def test_scenario_sentinel_rejected(self):
        result = parse_payload(Route.SINGLE_PHASE, "bridge/b1/A1/reading", {"sensor_sn": "S1", "current_A": -555555}, "b")
        assert result is not None
        assert result.points == []

    def test_sentinel_without_id(self):
        assert parse_payload(Route.SINGLE_PHASE, "bridge/b1/A1/reading", {"current_A": -555555}, "b") is None

    def test_descriptor(self):
        payload = {"sensor_sn": "S1", "type": "PAN14", "rssi_dBm": -62.0, "current_A": 1.0}
        result = parse_payload(Route.SINGLE_PHASE, "bridge/b1/A1/reading", payload, "b")
        assert result is not None
        assert result.descriptor["model"] == "PAN14"
        assert result.descriptor["device_type"] == "energy_monitor"
        assert result.descriptor["rssi"] == -62.0

    def test_default_model(self):
        result = parse_payload(Route.SINGLE_PHASE, "bridge/b1/A1/reading", {"sensor_sn": "S1"}, "b")
        assert result is not None
        assert result.descriptor["model"] == "PAN12"
        assert result.descriptor["rssi"] is None


class TestThreePhaseParser:
    """MSCHN three-phase readings."""

    PAYLOAD = {
        "ID": "M1",
        "time": "2025-12-03 22:00:00",
        "I1": "7.18",
        "I2": "6.5",
        "I3": "5.0",
        "V1": "230",
        "V2": "231",
        "V3": "229",
        "Frequency": "50.01",
    }

    def test_phases_and_power_estimate(self):
        result = parse_payload(Route.THREE_PHASE, "MSCHN/misure", dict(self.PAYLOAD), "b")
        assert result is not None
        metrics = {p.metric: p for p in result.points}
        assert metrics["energy.current_l1"].value == 7.18
        assert metrics["energy.voltage_l3"].value == 229.0
        assert metrics["energy.frequency_hz"].unit == "Hz"
        power = metrics["energy.power_kw"]
        assert power.value == 4.298
        assert power.labels == {"mschn_id": "M1", "estimate": "unity_power_factor"}
        assert power.quality == "good"
        assert all(p.timestamp == "2025-12-03T22:00:00.000Z" for p in result.points)
        assert result.descriptor["model"] == "MSCHN"

    def test_power_estimate_disabled(self):
        result = parse_payload(Route.THREE_PHASE, "MSCHN/misure", dict(self.PAYLOAD), "b", power_estimate=False)
        assert result is not None
        assert "energy.power_kw" not in {p.metric for p in result.points}
        assert len(result.points) == 7

    def test_no_estimate_without_all_phases(self):
        payload = dict(self.PAYLOAD)
        payload["V3"] = "-555555"
        assert estimate_power_kw(payload) is None
        result = parse_payload(Route.THREE_PHASE, "MSCHN/misure", payload, "b")
        assert result is not None
        assert "energy.power_kw" not in {p.metric for p in result.points}
        assert "energy.voltage_l3" not in {p.metric for p in result.points}

    def test_missing_id(self):
        payload = dict(self.PAYLOAD)
        del payload["ID"]
        assert parse_payload(Route.THREE_PHASE, "MSCHN/misure", payload, "b") is None


class TestParsePayload:
    """Dispatcher guards."""

    def test_route_none(self):
        assert parse_payload(Route.NONE, "x", {"DeviceID": "X", "CO2": 1}, "b") is None

    @pytest.mark.parametrize("payload", [[1, 2], "text", 42, None])
    def test_non_object_payload(self, payload):
        assert parse_payload(Route.AIR_QUALITY, "fosensor/x", payload, "b") is None

    @pytest.mark.parametrize(
        ("route", "topic", "payload"),
        [
            (Route.AIR_QUALITY, "fosensor/x", {"DeviceID": "X", "CO2": 1, "VOC": 2, "lux": 3, "battery": 4}),
            (Route.SINGLE_PHASE, "bridge/b/A1/reading", {"sensor_sn": "S", "current_A": 1, "energy_kwh": 2}),
            (Route.THREE_PHASE, "MSCHN/x", {"ID": "M", "I1": 1, "Power Factor": 0.9}),
        ],
    )
    def test_points_are_canonical_and_non_empty(self, route, topic, payload):
        result = parse_payload(route, topic, payload, "b")
        assert result is not None
        assert result.points
        assert all(p.metric in metric_catalog.CANONICAL_METRICS for p in result.points)
