"""
STI Status Server - Read-only HTTP projections of the ingestion state.

Endpoints:
- GET /health  -> JSON summary; 200 when connected to the broker, 503 otherwise
- GET /metrics -> Prometheus text exposition of counters and gauges
"""

from __future__ import annotations

import http.server
import threading
import time
import typing
import urllib.parse

from sti_modules import sti_tools

if typing.TYPE_CHECKING:
    from sti_modules.mqtt_ingestor import IngestService

METRICS_CONTENT_TYPE: str = "text/plain; version=0.0.4; charset=utf-8"

_COUNTER_HELP: dict[str, str] = {
    "messages_received": "Total MQTT messages received",
    "messages_processed": "Total MQTT messages that produced telemetry",
    "messages_failed": "Total MQTT messages that failed processing",
    "messages_skipped": "Total MQTT messages on unrouted topics",
    "decode_errors": "Total MQTT payloads that were not valid JSON",
    "points_buffered": "Total telemetry points accepted into the buffer",
    "points_shed": "Total telemetry points shed because the buffer was full",
    "raw_buffered": "Total raw-audit records accepted into the buffer",
    "raw_shed": "Total raw-audit records shed because the buffer was full",
    "telemetry_inserted": "Total telemetry points written to the store",
    "raw_inserted": "Total raw-audit records written to the store",
    "insert_errors": "Total batches that failed after all retries",
    "points_dropped": "Total telemetry points dropped after failed writes",
    "raw_dropped": "Total raw-audit records dropped after failed writes",
    "points_rejected": "Total telemetry points the store refused to encode",
    "raw_rejected": "Total raw-audit records the store refused to encode",
    "devices_registered": "Total devices auto-registered",
    "device_errors": "Total device registry errors",
}


def render_health(service: IngestService) -> tuple[int, dict[str, typing.Any]]:
    """Return (http status, body) for /health."""
    connected = service.is_connected()
    body: dict[str, typing.Any] = {
        "status": "ok" if connected else "degraded",
        "timestamp": sti_tools.iso_instant(sti_tools.utc_now()),
        "connection": service.connection_state.value,
        "broker": service.broker,
        "topics": list(service.topics),
        "buffers": {
            "raw": len(service.buffers.raw),
            "telemetry": len(service.buffers.telemetry),
            "capacity": service.buffers.telemetry.capacity,
        },
        "stats": service.stats.snapshot(),
        "device_cache_size": len(service.cache),
        "uptime_s": round(time.monotonic() - service.started_at, 3),
    }
    return (200 if connected else 503), body


def render_metrics(service: IngestService) -> str:
    """Render /metrics in Prometheus text exposition format."""
    lines: list[str] = []

    def add(name: str, metric_type: str, help_text: str, value: float) -> None:
        lines.append(f"# HELP sti_{name} {help_text}")
        lines.append(f"# TYPE sti_{name} {metric_type}")
        lines.append(f"sti_{name} {value}")

    snapshot = service.stats.snapshot()
    for name, help_text in _COUNTER_HELP.items():
        add(f"{name}_total", "counter", help_text, snapshot[name])

    add("buffer_raw_size", "gauge", "Current size of the raw-audit buffer", len(service.buffers.raw))
    add("buffer_telemetry_size", "gauge", "Current size of the telemetry buffer", len(service.buffers.telemetry))
    add("buffer_capacity", "gauge", "Capacity of each buffer", service.buffers.telemetry.capacity)
    add("device_cache_size", "gauge", "Resolved device identities held in memory", len(service.cache))
    add("mqtt_connected", "gauge", "1 when connected to the MQTT broker", int(service.is_connected()))

    return "\n".join(lines) + "\n"


class StatusHTTPServer(http.server.ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, bind_address: tuple[str, int], service: IngestService) -> None:
        super().__init__(bind_address, StatusRequestHandler)
        self.service: IngestService = service


class StatusRequestHandler(http.server.BaseHTTPRequestHandler):
    server: StatusHTTPServer

    def do_GET(self) -> None:
        path = urllib.parse.urlparse(self.path).path
        try:
            if path == "/health":
                status, body = render_health(self.server.service)
                self._send(status, "application/json", sti_tools.json_dumps(body))
            elif path == "/metrics":
                self._send(200, METRICS_CONTENT_TYPE, render_metrics(self.server.service))
            else:
                self._send(404, "text/plain; charset=utf-8", "not found\n")
        except Exception as e:
            sti_tools.print_exception(e, f"status: request failed path={path}")
            self._send(500, "text/plain; charset=utf-8", "internal error\n")

    def _send(self, status: int, content_type: str, text: str) -> None:
        data = text.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, format: str, *args: typing.Any) -> None:  # noqa: A002,ANN401
        sti_tools.log_debug(f"status: {self.address_string()} {format % args}")


def start_status_server(service: IngestService, bind_address: tuple[str, int]) -> StatusHTTPServer:
    """Bind the status server and serve it from a daemon thread. Stop with shutdown()."""
    server = StatusHTTPServer(bind_address, service)
    threading.Thread(target=server.serve_forever, daemon=True, name="status-server").start()
    sti_tools.log_diagnostic(f"status: listening on {server.server_address[0]}:{server.server_address[1]}")
    return server
