#!.venv/bin/python3
"""
STI MQTT Ingestor - Ingests IoT telemetry from MQTT and writes it to QuestDB.

Subscribes to the configured topic patterns, decodes each message, routes it
to a protocol parser, resolves the device identity (auto-registering unknown
devices to the default site), and enqueues telemetry points plus a raw-audit
record. A background flusher writes both buffers to QuestDB in batches.

Message flow: MQTT broker -> on_message() -> IngestService.handle_message()
              -> DualBuffer -> BatchFlusher -> QuestDB

Messages are handled synchronously on the MQTT network thread, which keeps
per-topic broker order up to buffer insertion. Nothing is flushed inline.
"""

from __future__ import annotations

import enum
import json
import os
import sys
import threading
import time
import typing

import questdb.ingress
import valkey.exceptions

from sti_modules import payload_parsers, sti_tools
from sti_modules.batch_flusher import BatchFlusher
from sti_modules.device_registry import DeviceIdentityCache, ValkeyDeviceRegistry
from sti_modules.ingest_stats import IngestStats
from sti_modules.payload_parsers import Route
from sti_modules.status_server import start_status_server
from sti_modules.store_writer import QuestDBStore, build_questdb_conf_string
from sti_modules.telemetry_buffer import DualBuffer

if typing.TYPE_CHECKING:
    import paho.mqtt.client
    import paho.mqtt.properties
    import paho.mqtt.reasoncodes

    from sti_modules.sti_tools import RawMessage, TelemetryPoint

getenv = os.environ.get


class Env:
    """
    Environment variables for MQTT Ingestor configuration.

    Prefix: STI_IMI (STI MQTT INGESTOR).
    """

    STI_IMI_MQTT_CLIENT_ID: str = getenv("STI_IMI_MQTT_CLIENT_ID", "sti-ingestion-client")
    STI_IMI_MQTT_TOPICS: str = getenv("STI_IMI_MQTT_TOPICS", "fosensor/#,bridge/#,MSCHN/#")
    STI_IMI_BROKER_NAME: str = getenv("STI_IMI_BROKER_NAME", "")

    STI_IMI_BATCH_SIZE: str = getenv("STI_IMI_BATCH_SIZE", "100")
    STI_IMI_FLUSH_INTERVAL_S: str = getenv("STI_IMI_FLUSH_INTERVAL_S", "5.0")
    STI_IMI_MAX_RETRIES: str = getenv("STI_IMI_MAX_RETRIES", "5")
    STI_IMI_RETRY_BASE_DELAY_S: str = getenv("STI_IMI_RETRY_BASE_DELAY_S", "1.0")
    STI_IMI_BUFFER_CAPACITY: str = getenv("STI_IMI_BUFFER_CAPACITY", "10000")

    STI_IMI_DEFAULT_SITE_ID: str = getenv("STI_IMI_DEFAULT_SITE_ID", "")
    STI_IMI_RAW_AUDIT: str = getenv("STI_IMI_RAW_AUDIT", "true")
    STI_IMI_THREE_PHASE_POWER_ESTIMATE: str = getenv("STI_IMI_THREE_PHASE_POWER_ESTIMATE", "true")
    STI_IMI_VALKEY_REGISTRY_PREFIX: str = getenv("STI_IMI_VALKEY_REGISTRY_PREFIX", "sti-devices")

    STI_IMI_HTTP_ENABLED: str = getenv("STI_IMI_HTTP_ENABLED", "true")
    STI_IMI_HTTP_HOST: str = getenv("STI_IMI_HTTP_HOST", "0.0.0.0")  # noqa: S104
    STI_IMI_HTTP_PORT: str = getenv("STI_IMI_HTTP_PORT", "3001")


class Config:
    """Parsed configuration from environment variables."""

    mqtt_client_id: str = Env.STI_IMI_MQTT_CLIENT_ID
    mqtt_topics: tuple[str, ...] = tuple(t.strip() for t in Env.STI_IMI_MQTT_TOPICS.split(",") if t.strip())
    broker_name: str = Env.STI_IMI_BROKER_NAME or f"{sti_tools.Config.mqtt_host}:{sti_tools.Config.mqtt_port}"

    batch_size: int = int(Env.STI_IMI_BATCH_SIZE)
    flush_interval_s: float = float(Env.STI_IMI_FLUSH_INTERVAL_S)
    max_retries: int = int(Env.STI_IMI_MAX_RETRIES)
    retry_base_delay_s: float = float(Env.STI_IMI_RETRY_BASE_DELAY_S)
    buffer_capacity: int = int(Env.STI_IMI_BUFFER_CAPACITY)

    default_site_id: str = Env.STI_IMI_DEFAULT_SITE_ID
    raw_audit: bool = Env.STI_IMI_RAW_AUDIT.lower() in ("1", "true")
    three_phase_power_estimate: bool = Env.STI_IMI_THREE_PHASE_POWER_ESTIMATE.lower() in ("1", "true")
    valkey_registry_prefix: str = Env.STI_IMI_VALKEY_REGISTRY_PREFIX

    http_enabled: bool = Env.STI_IMI_HTTP_ENABLED.lower() in ("1", "true")
    http_bind_address: tuple[str, int] = (Env.STI_IMI_HTTP_HOST, int(Env.STI_IMI_HTTP_PORT))


class ConnectionState(enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"


def subscribable_topics(topics: typing.Iterable[str]) -> list[str]:
    """Drop broker-reserved ($...) patterns from a subscription list."""
    result: list[str] = []
    for topic in topics:
        if payload_parsers.is_reserved_topic(topic):
            sti_tools.log_warning(f"mqtt: reserved topic not subscribed topic={topic}")
            continue
        result.append(topic)
    return result


class IngestService:
    """
    Ingestion context shared by the MQTT handler, flusher and status server.

    handle_message() must be called from a single thread (the MQTT network thread).
    """

    def __init__(
        self,
        broker: str,
        topics: typing.Sequence[str],
        buffers: DualBuffer,
        cache: DeviceIdentityCache,
        stats: IngestStats,
        raw_audit: bool = True,
        power_estimate: bool = True,
    ) -> None:
        self.broker: str = broker
        self.topics: typing.Sequence[str] = topics
        self.buffers: DualBuffer = buffers
        self.cache: DeviceIdentityCache = cache
        self.stats: IngestStats = stats
        self.raw_audit: bool = raw_audit
        self.power_estimate: bool = power_estimate

        self.started_at: float = time.monotonic()
        self._connection_state: ConnectionState = ConnectionState.CONNECTING
        self._state_lock: threading.Lock = threading.Lock()

    @property
    def connection_state(self) -> ConnectionState:
        with self._state_lock:
            return self._connection_state

    def set_connection_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            previous = self._connection_state
            self._connection_state = state
        if previous is not state:
            sti_tools.log_diagnostic(f"mqtt: state {previous.value} -> {state.value}")

    def is_connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    def handle_message(self, topic: str, payload: bytes) -> None:
        """
        Decode, route, parse, resolve and enqueue one message.

        Does not throw exceptions for bad input: failures are logged and counted.
        """
        self.stats.incr("messages_received")
        received_at = sti_tools.iso_instant(sti_tools.utc_now())

        try:
            document = json.loads(payload.decode("utf-8"))
        except ValueError as e:  # also UnicodeDecodeError and the integer digit limit
            sti_tools.log_warning(f"ingest: decode failed topic={topic} error={e}")
            self.stats.incr("decode_errors")
            self.stats.incr("messages_failed")
            raw_text = payload.decode("utf-8", errors="replace")
            self._audit(received_at, self.broker, topic, {"raw": raw_text}, None, "unknown", "Invalid JSON payload")
            return

        audit_payload = document if isinstance(document, dict) else {"value": document}

        route = payload_parsers.route_topic(topic)
        if route is Route.NONE:
            sti_tools.log_debug(f"ingest: skipped topic={topic}")
            self.stats.incr("messages_skipped")
            self._audit(received_at, self.broker, topic, audit_payload, None, "unknown", "Unknown topic pattern")
            return

        result = payload_parsers.parse_payload(
            route, topic, document, self.broker, power_estimate=self.power_estimate
        )
        if result is None:
            self.stats.incr("messages_failed")
            self._audit(received_at, self.broker, topic, audit_payload, None, route.value, "Failed to parse payload")
            return

        descriptor = result.descriptor
        if not result.points:
            sti_tools.log_debug(f"ingest: no valid measurements topic={topic} external_id={descriptor['external_id']}")
            self.stats.incr("messages_failed")
            self._audit(
                received_at,
                descriptor["broker"],
                topic,
                audit_payload,
                descriptor["external_id"],
                route.value,
                "No valid measurements",
            )
            return

        identity = self.cache.resolve(descriptor)
        if identity is None:
            self.stats.incr("messages_failed")
            self._audit(
                received_at,
                descriptor["broker"],
                topic,
                audit_payload,
                descriptor["external_id"],
                route.value,
                "Unresolved device",
            )
            return

        self._audit(received_at, descriptor["broker"], topic, audit_payload, descriptor["external_id"], route.value)

        buffered = 0
        for point in result.points:
            telemetry_point: TelemetryPoint = {
                "device_id": identity.internal_id,
                "site_id": identity.site_id,
                "timestamp": point.timestamp,
                "metric": point.metric,
                "value": point.value,
                "unit": point.unit,
                "labels": point.labels,
                "quality": point.quality,
            }
            if self.buffers.telemetry.append(telemetry_point):
                buffered += 1
            else:
                self.stats.incr("points_shed")
                sti_tools.log_warning(f"ingest: telemetry buffer full, point shed metric={point.metric}")

        self.stats.incr("points_buffered", buffered)
        self.stats.incr("messages_processed")
        sti_tools.log_debug(
            f"ingest: processed topic={topic} route={route.value} external_id={descriptor['external_id']}"
            f" points={buffered}"
        )

    def _audit(
        self,
        received_at: str,
        broker: str,
        topic: str,
        payload: dict[str, typing.Any],
        device_external_id: str | None,
        source_type: str,
        error_message: str | None = None,
    ) -> None:
        if not self.raw_audit:
            return

        message: RawMessage = {
            "received_at": received_at,
            "broker": broker,
            "topic": topic,
            "payload": payload,
            "device_external_id": device_external_id,
            "source_type": source_type,
            "processed": error_message is None,
            "error_message": error_message,
        }
        if self.buffers.raw.append(message):
            self.stats.incr("raw_buffered")
        else:
            self.stats.incr("raw_shed")
            sti_tools.log_warning(f"ingest: raw buffer full, record shed topic={topic}")


class MqttHandler(sti_tools.MqttBaseHandler):
    """MQTT handler that feeds IngestService and tracks the connection state."""

    def __init__(
        self,
        service: IngestService,
        topics: typing.Sequence[str],
        sigterm_event: threading.Event,
    ) -> None:
        super().__init__(sigterm_event)
        self.service: IngestService = service
        self.topics: list[str] = subscribable_topics(topics)

    def on_connect(
        self,
        client: paho.mqtt.client.Client,
        userdata: typing.Any,  # noqa: ANN401
        flags: paho.mqtt.client.ConnectFlags,
        reason_code: paho.mqtt.reasoncodes.ReasonCode,
        properties: paho.mqtt.properties.Properties | None,
    ) -> None:
        super().on_connect(client, userdata, flags, reason_code, properties)
        if self.service.connection_state is ConnectionState.CLOSING:
            return
        if reason_code.is_failure:
            self.service.set_connection_state(ConnectionState.RECONNECTING)
            return

        self.service.set_connection_state(ConnectionState.CONNECTED)
        if not self.topics:
            sti_tools.log_warning("mqtt: no topics to subscribe")
            return
        sti_tools.log_diagnostic(f"mqtt: subscribing topics={self.topics}")
        client.subscribe([(topic, 1) for topic in self.topics])

    def on_disconnect(
        self,
        client: paho.mqtt.client.Client,
        userdata: typing.Any,  # noqa: ANN401
        flags: paho.mqtt.client.DisconnectFlags,
        reason_code: paho.mqtt.reasoncodes.ReasonCode,
        properties: paho.mqtt.properties.Properties | None,
    ) -> None:
        super().on_disconnect(client, userdata, flags, reason_code, properties)
        if self.service.connection_state is ConnectionState.CLOSING:
            return
        self.service.set_connection_state(ConnectionState.RECONNECTING)

    def on_message(
        self,
        client: paho.mqtt.client.Client,  # noqa: ARG002
        userdata: typing.Any,  # noqa: ANN401,ARG002
        message: paho.mqtt.client.MQTTMessage,
    ) -> None:
        """Handle incoming MQTT message."""
        if self.service.connection_state is ConnectionState.CLOSING:
            return
        try:
            self.service.handle_message(message.topic, message.payload)
        except Exception as e:
            sti_tools.print_exception(e, f"mqtt: message processing failed topic={message.topic}")
            self.service.stats.incr("messages_failed")


def main() -> int:
    """Entry point for MQTT ingestor. Returns 0 on success, 1 on error."""
    sti_tools.log_diagnostic("main: starting mqtt_ingestor")
    sti_tools.print_vars(Config)

    sigterm_event = sti_tools.configure_sigterm_handler()

    questdb_conf = build_questdb_conf_string()
    store = QuestDBStore(questdb_conf)
    try:
        store.check()
    except questdb.ingress.IngressError as e:
        sti_tools.print_exception(e, "main: questdb unreachable, fatal")
        return 1

    stats = IngestStats()
    buffers = DualBuffer(Config.buffer_capacity)

    try:
        # noinspection PyTypeChecker
        with sti_tools.create_valkey_client() as r:
            registry = ValkeyDeviceRegistry(r, Config.valkey_registry_prefix)
            sti_tools.log_diagnostic(f"main: device registry ready devices={registry.count()}")
            if not Config.default_site_id:
                sti_tools.log_warning("main: no default site configured, unknown devices will be dropped")

            cache = DeviceIdentityCache(registry, stats, Config.default_site_id)
            service = IngestService(
                Config.broker_name,
                Config.mqtt_topics,
                buffers,
                cache,
                stats,
                raw_audit=Config.raw_audit,
                power_estimate=Config.three_phase_power_estimate,
            )

            flusher = BatchFlusher(
                buffers,
                store,
                stats,
                batch_size=Config.batch_size,
                flush_interval_s=Config.flush_interval_s,
                max_retries=Config.max_retries,
                retry_base_delay_s=Config.retry_base_delay_s,
                sigterm_event=sigterm_event,
            )
            flusher.start()

            status_server = start_status_server(service, Config.http_bind_address) if Config.http_enabled else None

            handler = MqttHandler(service, Config.mqtt_topics, sigterm_event)

            # noinspection PyTypeChecker
            with sti_tools.create_mqtt_client(handler, Config.mqtt_client_id):
                sti_tools.log_diagnostic("main: ready, waiting for messages")

                while not sigterm_event.is_set():
                    sigterm_event.wait(timeout=sti_tools.Config.sigterm_wait_s)
                sti_tools.log_diagnostic("main: shutdown signal received")

                service.set_connection_state(ConnectionState.CLOSING)

            sti_tools.log_diagnostic("main: waiting for in-flight flush")
            flusher.stop()
            flusher.drain()

            if status_server is not None:
                status_server.shutdown()
                status_server.server_close()

            snapshot = stats.snapshot()
            sti_tools.log_result(
                "main: finished " + " ".join(f"{name}={value}" for name, value in snapshot.items())
            )

    except valkey.exceptions.ValkeyError as e:
        sti_tools.print_exception(e, "main: valkey error, fatal")
        return 1
    except Exception as e:
        sti_tools.print_exception(e, "main: fatal error")
        return 1
    finally:
        store.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
