#!.venv/bin/python3
"""
STI Tools - Shared utilities for STI modules.

Provides common utilities for all STI modules:
- Logging with timestamps (ISO 8601 format, UTC)
- Signal handling for graceful shutdown (SIGTERM, SIGINT)
- MQTT client management (MQTTv5, TLS support, automatic reconnect)
- Valkey client management (retry logic, TLS support)
- Common type definitions (RawMessage, TelemetryPoint, DeviceDescriptor)
"""

from __future__ import annotations

import abc
import contextlib
import datetime
import inspect
import json
import logging
import os
import signal
import ssl
import sys
import threading
import traceback
import typing

import paho.mqtt.client
import paho.mqtt.enums
import paho.mqtt.properties
import paho.mqtt.reasoncodes
import valkey
import valkey.backoff
import valkey.exceptions
import valkey.retry

if typing.TYPE_CHECKING:
    import types

getenv = os.environ.get
T = typing.TypeVar("T")

logging.basicConfig(level=logging.INFO, format="%(message)s")

logger = logging.getLogger(__name__)


class Env:
    """
    Environment variables for STI tools configuration.

    All values are strings read from environment with defaults.
    Parsed values are available in the Config class.
    """

    STI_DEBUG: str = getenv("STI_DEBUG", "false")

    STI_VALKEY_HOST: str = getenv("STI_VALKEY_HOST", "127.0.0.1")
    STI_VALKEY_PORT: str = getenv("STI_VALKEY_PORT", "6379")
    STI_VALKEY_SSL: str = getenv("STI_VALKEY_SSL", "false")
    STI_VALKEY_DB: str = getenv("STI_VALKEY_DB", "0")
    STI_VALKEY_PASSWORD: str = getenv("STI_VALKEY_PASSWORD", "")

    STI_MQTT_HOST: str = getenv("STI_MQTT_HOST", "127.0.0.1")
    STI_MQTT_PORT: str = getenv("STI_MQTT_PORT", "1883")
    STI_MQTT_SSL: str = getenv("STI_MQTT_SSL", "false")
    STI_MQTT_USERNAME: str = getenv("STI_MQTT_USERNAME", "")
    STI_MQTT_PASSWORD: str = getenv("STI_MQTT_PASSWORD", "")
    STI_MQTT_KEEPALIVE_S: str = getenv("STI_MQTT_KEEPALIVE_S", "60")
    STI_MQTT_RECONNECT_DELAY_S: str = getenv("STI_MQTT_RECONNECT_DELAY_S", "5")

    STI_VALKEY_SOCKET_TIMEOUT_S: str = getenv("STI_VALKEY_SOCKET_TIMEOUT_S", "5")
    STI_VALKEY_SOCKET_CONNECT_TIMEOUT_S: str = getenv("STI_VALKEY_SOCKET_CONNECT_TIMEOUT_S", "15")
    STI_VALKEY_RETRY_CAP: str = getenv("STI_VALKEY_RETRY_CAP", "3")
    STI_VALKEY_RETRY_BASE: str = getenv("STI_VALKEY_RETRY_BASE", "0.15")
    STI_VALKEY_RETRY_COUNT: str = getenv("STI_VALKEY_RETRY_COUNT", "3")

    STI_SIGTERM_WAIT_S: str = getenv("STI_SIGTERM_WAIT_S", "5.0")


class Config:
    """
    Parsed configuration from environment variables.

    Class-level attributes are initialized at module load time.
    Boolean values are parsed from "1" or "true" (case-insensitive).
    """

    debug: bool = Env.STI_DEBUG.lower() in ("1", "true")

    valkey_host: str = Env.STI_VALKEY_HOST
    valkey_port: int = int(Env.STI_VALKEY_PORT)
    valkey_ssl: bool = Env.STI_VALKEY_SSL.lower() in ("1", "true")
    valkey_db: int = int(Env.STI_VALKEY_DB)
    valkey_password: str = Env.STI_VALKEY_PASSWORD

    mqtt_host: str = Env.STI_MQTT_HOST
    mqtt_port: int = int(Env.STI_MQTT_PORT)
    mqtt_ssl: bool = Env.STI_MQTT_SSL.lower() in ("1", "true")
    mqtt_username: str = Env.STI_MQTT_USERNAME
    mqtt_password: str = Env.STI_MQTT_PASSWORD
    mqtt_keepalive_s: int = int(Env.STI_MQTT_KEEPALIVE_S)
    mqtt_reconnect_delay_s: int = int(Env.STI_MQTT_RECONNECT_DELAY_S)

    valkey_socket_timeout_s: float = float(Env.STI_VALKEY_SOCKET_TIMEOUT_S)
    valkey_socket_connect_timeout_s: float = float(Env.STI_VALKEY_SOCKET_CONNECT_TIMEOUT_S)
    valkey_retry_cap: float = float(Env.STI_VALKEY_RETRY_CAP)
    valkey_retry_base: float = float(Env.STI_VALKEY_RETRY_BASE)
    valkey_retry_count: int = int(Env.STI_VALKEY_RETRY_COUNT)

    sigterm_wait_s: float = float(Env.STI_SIGTERM_WAIT_S)


def print_(msg: str, level: int = logging.INFO) -> None:
    """Log message with ISO timestamp prefix (UTC)."""
    timestamp = datetime.datetime.now(datetime.UTC).replace(microsecond=0).isoformat()
    logger.log(level, f"{timestamp} {msg}")


def log_result(msg: str) -> None:
    """Log result message. Use for operational results and metrics."""
    print_(msg)


def log_diagnostic(msg: str) -> None:
    """Log diagnostic message. Use for startup, shutdown, and events."""
    print_(msg)


def log_debug(msg: str) -> None:
    """Log message only when STI_DEBUG is enabled."""
    if Config.debug:
        print_(msg)


def log_warning(msg: str) -> None:
    """Log a recoverable problem: data dropped or degraded, pipeline continues."""
    print_(f"WARNING: {msg}", logging.WARNING)


def log_error(msg: str) -> None:
    """Log an unrecoverable problem for the affected data (e.g. data loss)."""
    print_(f"ERROR: {msg}", logging.ERROR)


def print_vars(obj: object) -> None:
    """
    Print all public attributes of an object or class.

    Useful for logging configuration at startup. Excludes private attributes
    and attributes that look like secrets.

    Args:
        obj: Object instance or class to inspect.
    """
    if isinstance(obj, type):
        class_name = obj.__name__
        attrs = vars(obj).items()
    else:
        class_name = type(obj).__name__
        attrs = {**vars(obj.__class__), **vars(obj)}.items()
    pub_attrs = {
        key: ("***" if "password" in key and value else value)
        for key, value in attrs
        if not key.startswith("_") and not callable(value)
    }
    log_diagnostic(f"{class_name} {pub_attrs}")


def print_exception(exception: BaseException, message: str = "") -> None:
    """Log exception details with timestamp. Includes file, line, function, and message."""
    exc_traceback: types.TracebackType | None = exception.__traceback__
    prefix = f"{message}: " if message else ""
    if exc_traceback:
        co_filename = exc_traceback.tb_frame.f_code.co_filename
        tb_lineno = exc_traceback.tb_lineno
        co_name = exc_traceback.tb_frame.f_code.co_name
        format_exception_only = traceback.format_exception_only(type(exception), exception)[0].strip()
        print_(f"EXCEPTION: {prefix}{co_filename}:{tb_lineno} ({co_name}) {format_exception_only}", logging.ERROR)
    else:
        print_(f"EXCEPTION: {prefix}{exception}", logging.ERROR)


def json_dumps(data: typing.Any) -> str:  # noqa: ANN401
    """
    Serialize data to compact JSON string without whitespace.

    Raises:
        TypeError: If data contains non-serializable types.
        ValueError: If data contains circular references.
    """
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def v_cast(x: typing.Awaitable[T] | T) -> T:
    """
    Cast away awaitable type for static type checkers.

    Workaround for valkey-py typing issues where methods return Awaitable[T] | T.
    See: https://github.com/valkey-io/valkey-py/issues/84

    Raises:
        TypeError: If an awaitable is passed (async client not supported).
    """
    if inspect.isawaitable(x):
        msg = "v_cast() received an awaitable."
        raise TypeError(msg)
    return x


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def iso_instant(dt: datetime.datetime) -> str:
    """Format an aware datetime as a strict ISO instant: 2025-12-31T23:59:49.000Z."""
    return dt.astimezone(datetime.UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso_instant(value: str) -> datetime.datetime:
    """Inverse of iso_instant(). Raises ValueError for malformed strings."""
    return datetime.datetime.fromisoformat(value)


def configure_sigterm_handler() -> threading.Event:
    """
    Configure SIGTERM/SIGINT handlers for graceful shutdown.

    First signal sets the returned event, second signal forces immediate exit.

    Returns:
        Event that is set when shutdown is requested.
    """
    sigterm_threading_event = threading.Event()

    class SigtermHandler:
        def __init__(self) -> None:
            self.sigterm_cnt = 0

        def __call__(self, signal_number: int, _current_stack_frame: types.FrameType | None) -> None:
            signal_name = signal.Signals(signal_number).name

            self.sigterm_cnt += 1
            if self.sigterm_cnt == 1:
                log_diagnostic(f"shutdown: interrupted by {signal_name}, graceful shutdown in progress")
                sigterm_threading_event.set()

            else:
                log_diagnostic(f"shutdown: interrupted by {signal_name} again, forced shutdown")
                sys.exit(-1)

    handler = SigtermHandler()
    for some_signal in [signal.SIGTERM, signal.SIGINT]:
        signal.signal(some_signal, handler)

    return sigterm_threading_event


class RawMessage(typing.TypedDict):
    """Raw-audit record: one per inbound message, append-only."""

    received_at: str
    broker: str
    topic: str
    payload: dict[str, typing.Any]
    device_external_id: str | None
    source_type: str
    processed: bool
    error_message: str | None


class TelemetryPoint(typing.TypedDict):
    """Normalized telemetry point: canonical metric, numeric value, resolved identity."""

    device_id: str
    site_id: str
    timestamp: str
    metric: str
    value: float
    unit: str | None
    labels: dict[str, str]
    quality: str


DeviceType = typing.Literal["air_quality", "energy_monitor", "water_meter"]


class DeviceDescriptor(typing.TypedDict):
    """Device as seen in one message, before identity resolution."""

    external_id: str
    broker: str
    model: str
    device_type: DeviceType
    mac: str | None
    rssi: float | None


@contextlib.contextmanager
def create_valkey_client() -> typing.Generator[valkey.Valkey]:
    """
    Create Valkey client context manager with retry logic and SSL support.

    Raises:
        valkey.exceptions.ValkeyError: If connection verification fails.
    """
    log_diagnostic(f"valkey: connecting server={Config.valkey_host}:{Config.valkey_port} ssl={Config.valkey_ssl}")
    r: valkey.Valkey | None = None
    try:
        r = valkey.Valkey(
            host=Config.valkey_host,
            port=Config.valkey_port,
            db=Config.valkey_db,
            password=Config.valkey_password or None,
            socket_timeout=Config.valkey_socket_timeout_s,
            socket_connect_timeout=Config.valkey_socket_connect_timeout_s,
            decode_responses=False,
            ssl=Config.valkey_ssl,
            ssl_ca_certs=None,
            ssl_check_hostname=False,
            ssl_cert_reqs="none",
            # https://valkey-py.readthedocs.io/en/stable/retry.html
            retry=valkey.retry.Retry(
                backoff=valkey.backoff.EqualJitterBackoff(
                    cap=Config.valkey_retry_cap,
                    base=Config.valkey_retry_base,
                ),
                retries=Config.valkey_retry_count,
            ),
            retry_on_error=[
                valkey.exceptions.BusyLoadingError,
                valkey.exceptions.ConnectionError,
                valkey.exceptions.TimeoutError,
            ],
            protocol=3,
        )

        try:
            log_diagnostic("valkey: client created, verifying connection")
            r.ping()
        except valkey.exceptions.ValkeyError as e:
            print_exception(e, "valkey: connect failed")
            raise
        else:
            log_diagnostic("valkey: connected")

        yield r

    finally:
        if r:
            try:
                log_diagnostic("valkey: closing client")
                r.close()
            except Exception as e:
                print_exception(e, "valkey: client close failed")
            else:
                log_diagnostic("valkey: client closed")


class MqttBaseHandler(abc.ABC):
    """
    Base class for MQTT message handling.

    Provides default connect/subscribe/disconnect callbacks.
    Subclasses must implement on_message(). Connection failures are logged only:
    the client reconnects on its own (see create_mqtt_client).
    """

    def __init__(
        self,
        sigterm_event: threading.Event,
    ) -> None:
        """Initialize with sigterm_event for shutdown signaling."""
        self.sigterm_event: threading.Event = sigterm_event

    def on_connect(
        self,
        client: paho.mqtt.client.Client,  # noqa: ARG002
        userdata: typing.Any,  # noqa: ANN401,ARG002
        flags: paho.mqtt.client.ConnectFlags,  # noqa: ARG002
        reason_code: paho.mqtt.reasoncodes.ReasonCode,
        properties: paho.mqtt.properties.Properties | None,  # noqa: ARG002
    ) -> None:
        """Handle connect callback."""
        if reason_code.is_failure:
            log_warning(f"mqtt: connect failed code={reason_code}")
        else:
            log_diagnostic(f"mqtt: connected code={reason_code}")

    def on_subscribe(
        self,
        client: paho.mqtt.client.Client,  # noqa: ARG002
        userdata: typing.Any,  # noqa: ANN401,ARG002
        mid: int,
        reason_code_list: list[paho.mqtt.reasoncodes.ReasonCode],
        properties: paho.mqtt.properties.Properties | None,  # noqa: ARG002
    ) -> None:
        """Handle subscribe callback."""
        is_failure = any(rc.is_failure for rc in reason_code_list)
        if is_failure:
            log_warning(f"mqtt: subscribe failed mid={mid} codes={reason_code_list}")
        else:
            log_diagnostic(f"mqtt: subscribed mid={mid} codes={reason_code_list}")

    def on_disconnect(
        self,
        client: paho.mqtt.client.Client,  # noqa: ARG002
        userdata: typing.Any,  # noqa: ANN401,ARG002
        flags: paho.mqtt.client.DisconnectFlags,  # noqa: ARG002
        reason_code: paho.mqtt.reasoncodes.ReasonCode,
        properties: paho.mqtt.properties.Properties | None,  # noqa: ARG002
    ) -> None:
        """Handle disconnect callback."""
        if reason_code.is_failure:
            log_warning(f"mqtt: disconnected unexpectedly code={reason_code}")
        else:
            log_diagnostic(f"mqtt: disconnected code={reason_code}")

    @abc.abstractmethod
    def on_message(
        self,
        client: paho.mqtt.client.Client,
        userdata: typing.Any,  # noqa: ANN401
        message: paho.mqtt.client.MQTTMessage,
    ) -> None:
        """Handle incoming MQTT message. Subclasses must implement."""
        ...


@contextlib.contextmanager
def create_mqtt_client(handler: MqttBaseHandler, client_id: str) -> typing.Generator[paho.mqtt.client.Client]:
    """
    Create MQTT client context manager with MQTTv5 and optional SSL/TLS.

    Connects asynchronously and starts network loop on entry; the loop keeps
    reconnecting after a fixed delay (Config.mqtt_reconnect_delay_s) until exit.
    Stops the loop and disconnects on exit.
    """
    mqtt_client: paho.mqtt.client.Client | None = None
    try:
        mqtt_client = paho.mqtt.client.Client(
            callback_api_version=paho.mqtt.enums.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            userdata=None,
            protocol=paho.mqtt.enums.MQTTProtocolVersion.MQTTv5,
            transport="tcp",
            reconnect_on_failure=True,
            manual_ack=False,
        )

        mqtt_client.on_connect = handler.on_connect
        mqtt_client.on_subscribe = handler.on_subscribe
        mqtt_client.on_disconnect = handler.on_disconnect
        mqtt_client.on_message = handler.on_message

        if Config.mqtt_username:
            mqtt_client.username_pw_set(Config.mqtt_username, Config.mqtt_password or None)

        if Config.mqtt_ssl:
            mqtt_ssl_context = ssl.create_default_context()
            mqtt_ssl_context.check_hostname = False
            mqtt_ssl_context.verify_mode = ssl.CERT_NONE
            mqtt_client.tls_set_context(mqtt_ssl_context)

        mqtt_client.reconnect_delay_set(
            min_delay=Config.mqtt_reconnect_delay_s,
            max_delay=Config.mqtt_reconnect_delay_s,
        )

        log_diagnostic(f"mqtt: connecting to {Config.mqtt_host}:{Config.mqtt_port}, ssl={Config.mqtt_ssl}")
        mqtt_client.connect_async(
            Config.mqtt_host,
            Config.mqtt_port,
            keepalive=Config.mqtt_keepalive_s,
        )

        log_diagnostic("mqtt: starting client loop")
        ret = mqtt_client.loop_start()
        log_diagnostic(f"mqtt: client loop started, result={ret}")

        yield mqtt_client

    finally:
        if mqtt_client:
            ret = mqtt_client.disconnect()
            log_diagnostic(f"mqtt: disconnected, result={ret}")
            log_diagnostic("mqtt: stopping client loop")
            ret = mqtt_client.loop_stop()
            log_diagnostic(f"mqtt: client loop stopped, result={ret}")
