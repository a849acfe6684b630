"""Shared fakes for the STI test suite."""

from __future__ import annotations

import types
import typing

import pytest
import valkey.exceptions

from sti_modules.device_registry import DeviceIdentityCache, DeviceRecord
from sti_modules.ingest_stats import IngestStats
from sti_modules.mqtt_ingestor import IngestService
from sti_modules.telemetry_buffer import DualBuffer


class FakeRegistry:
    """In-memory DeviceRegistry. Set `fail` to simulate an unreachable registry."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], DeviceRecord] = {}
        self.find_calls = 0
        self.touches: list[tuple[str, str, dict[str, typing.Any]]] = []
        self.fail = False
        self.race_winner: DeviceRecord | None = None

    def find(self, external_id: str, broker: str) -> DeviceRecord | None:
        self.find_calls += 1
        if self.fail:
            raise valkey.exceptions.ConnectionError("registry down")
        return self.records.get((external_id, broker))

    def insert(self, record: DeviceRecord) -> tuple[DeviceRecord, bool]:
        if self.fail:
            raise valkey.exceptions.ConnectionError("registry down")
        key = (record["external_id"], record["broker"])
        if self.race_winner is not None:
            self.records[key] = self.race_winner
        if key in self.records:
            return self.records[key], False
        self.records[key] = record
        return record, True

    def touch(self, external_id: str, broker: str, fields: dict[str, typing.Any]) -> bool:
        self.touches.append((external_id, broker, fields))
        record = self.records.get((external_id, broker))
        if record is None:
            return False
        record.update(fields)  # type: ignore[typeddict-item]
        return True


class FakeStore:
    """TelemetryStore that records batches and fails the first `fail_times` calls (or always)."""

    def __init__(self, fail_times: int = 0, always_fail: bool = False) -> None:
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.calls = 0
        self.raw_batches: list[list[typing.Any]] = []
        self.telemetry_batches: list[list[typing.Any]] = []

    def _attempt(self) -> None:
        self.calls += 1
        if self.always_fail:
            raise ConnectionError("store down")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("store down")

    def write_raw(self, messages: typing.Sequence[typing.Any]) -> int:
        self._attempt()
        self.raw_batches.append(list(messages))
        return len(messages)

    def write_telemetry(self, points: typing.Sequence[typing.Any]) -> int:
        self._attempt()
        self.telemetry_batches.append(list(points))
        return len(points)


def existing_record(external_id: str, broker: str, internal_id: str = "dev-1", site_id: str = "site-1") -> DeviceRecord:
    return {
        "id": internal_id,
        "external_id": external_id,
        "broker": broker,
        "site_id": site_id,
        "name": f"WEEL - {external_id[-4:]}",
        "model": "WEEL",
        "device_type": "air_quality",
        "mac_address": None,
        "status": "offline",
        "last_seen": "2025-01-01T00:00:00.000Z",
        "rssi_dbm": None,
        "auto_created": False,
        "created_at": "2025-01-01T00:00:00.000Z",
    }


def mqtt_message(topic: str, payload: bytes) -> types.SimpleNamespace:
    return types.SimpleNamespace(topic=topic, payload=payload, qos=1, retain=False)


def reason_code(is_failure: bool) -> types.SimpleNamespace:
    return types.SimpleNamespace(is_failure=is_failure)


@pytest.fixture
def stats() -> IngestStats:
    return IngestStats()


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def make_service(registry: FakeRegistry, stats: IngestStats) -> typing.Callable[..., IngestService]:
    def _make(
        default_site_id: str = "site-1",
        capacity: int = 10_000,
        raw_audit: bool = True,
        power_estimate: bool = True,
    ) -> IngestService:
        cache = DeviceIdentityCache(registry, stats, default_site_id, background_touch=False)
        return IngestService(
            "broker-1",
            ["fosensor/#", "bridge/#", "MSCHN/#"],
            DualBuffer(capacity),
            cache,
            stats,
            raw_audit=raw_audit,
            power_estimate=power_estimate,
        )

    return _make
