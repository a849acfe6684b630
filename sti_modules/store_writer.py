"""
STI Store Writer - Writes raw-audit records and telemetry points to QuestDB.

Uses HTTP ILP with manual flushing: one flush per batch, so a batch is either
accepted as a whole or the call raises questdb.ingress.IngressError. A single
row that cannot be encoded is logged and skipped instead of failing its batch.

Tables:
- telemetry:         symbols device_id, site_id, metric, quality, unit; columns value, labels
- mqtt_messages_raw: symbols broker, source_type, device_external_id;
                     columns topic, payload, processed, error_message
"""

from __future__ import annotations

import os
import threading
import typing

import questdb.ingress

from sti_modules import sti_tools

if typing.TYPE_CHECKING:
    from sti_modules.sti_tools import RawMessage, TelemetryPoint

getenv = os.environ.get

TELEMETRY_TABLE: str = "telemetry"
RAW_TABLE: str = "mqtt_messages_raw"

# Raised by Sender.row for a single row that cannot be encoded (e.g. a negative timestamp).
# The sender rewinds its buffer to the previous row, so the rest of the batch is unaffected.
_ROW_ERRORS: tuple[type[Exception], ...] = (questdb.ingress.IngressError, ValueError, TypeError)


class Env:
    """Environment variables for QuestDB connection. Shared by all STI modules."""

    STI_QUESTDB_HOST: str = getenv("STI_QUESTDB_HOST", "127.0.0.1")
    STI_QUESTDB_PORT: str = getenv("STI_QUESTDB_PORT", "9000")
    STI_QUESTDB_SSL: str = getenv("STI_QUESTDB_SSL", "false")
    STI_QUESTDB_USERNAME: str = getenv("STI_QUESTDB_USERNAME", "")
    STI_QUESTDB_PASSWORD: str = getenv("STI_QUESTDB_PASSWORD", "")


class Config:
    """Parsed configuration from environment variables."""

    questdb_address: tuple[str, int] = (Env.STI_QUESTDB_HOST, int(Env.STI_QUESTDB_PORT))
    questdb_ssl: bool = Env.STI_QUESTDB_SSL.lower() in ("1", "true")
    questdb_username: str = Env.STI_QUESTDB_USERNAME
    questdb_password: str = Env.STI_QUESTDB_PASSWORD


def build_questdb_conf_string() -> str:
    """Build QuestDB ILP HTTP connection string with optional SSL and auth."""
    protocol = "https" if Config.questdb_ssl else "http"
    host, port = Config.questdb_address

    conf = f"{protocol}::addr={host}:{port};auto_flush=off;"

    if Config.questdb_username and Config.questdb_password:
        conf += f"username={Config.questdb_username};password={Config.questdb_password};"

    if Config.questdb_ssl:
        conf += "tls_verify=unsafe_off;"

    return conf


class TelemetryStore(typing.Protocol):
    """
    Durable sink for flushed batches.

    A write returns how many rows were accepted; rows that cannot be encoded are
    skipped. Raises when the batch as a whole could not be written.
    """

    def write_raw(self, messages: typing.Sequence[RawMessage]) -> int: ...

    def write_telemetry(self, points: typing.Sequence[TelemetryPoint]) -> int:
        with self._lock:
            try:
                sender = self._get()
                written = 0
                for point in points:
                    symbols = {
                        "device_id": point["device_id"],
                        "site_id": point["site_id"],
                        "metric": point["metric"],
                        "quality": point["quality"],
                    }
                    if point["unit"] is not None:
                        symbols["unit"] = point["unit"]
                    try:
                        sender.row(
                            TELEMETRY_TABLE,
                            symbols=symbols,
                            columns={
                                "value": point["value"],
                                "labels": sti_tools.json_dumps(point["labels"]),
                            },
                            at=sti_tools.parse_iso_instant(point["timestamp"]),
                        )
                    except _ROW_ERRORS as e:
                        sti_tools.log_error(
                            f"questdb: telemetry row rejected device_id={point['device_id']}"
                            f" metric={point['metric']} timestamp={point['timestamp']} error={e}"
                        )
                        continue
                    written += 1
                sender.flush()
            except Exception:
                self._reset()
                raise
            return written

    def write_raw(self, messages: typing.Sequence[RawMessage]) -> int:
        with self._lock:
            try:
                sender = self._get()
                written = 0
                for message in messages:
                    symbols = {
                        "broker": message["broker"],
                        "source_type": message["source_type"],
                    }
                    if message["device_external_id"] is not None:
                        symbols["device_external_id"] = message["device_external_id"]
                    columns: dict[str, typing.Any] = {
                        "topic": message["topic"],
                        "payload": sti_tools.json_dumps(message["payload"]),
                        "processed": message["processed"],
                    }
                    if message["error_message"] is not None:
                        columns["error_message"] = message["error_message"]
                    try:
                        sender.row(
                            RAW_TABLE,
                            symbols=symbols,
                            columns=columns,
                            at=sti_tools.parse_iso_instant(message["received_at"]),
                        )
                    except _ROW_ERRORS as e:
                        sti_tools.log_error(
                            f"questdb: raw row rejected topic={message['topic']}"
                            f" received_at={message['received_at']} error={e}"
                        )
                        continue
                    written += 1
                sender.flush()
            except Exception:
                self._reset()
                raise
            return written

    def close(self) -> None:
        """Close sender if open."""
        with self._lock:
            if self._sender is not None:
                sti_tools.log_diagnostic("questdb: closing sender")
                self._reset()
                sti_tools.log_diagnostic("questdb: sender closed")
