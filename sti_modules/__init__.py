"""
STI Modules - Site Telemetry Ingestion modules.

This package contains modules for ingesting IoT telemetry from MQTT,
normalizing it to canonical metrics, and writing it to QuestDB.

Modules:
    sti_tools: Shared utilities (logging, MQTT/Valkey clients, signal handling)
    metric_catalog: Canonical metric names and value validity filter
    payload_parsers: Topic routing and per-protocol payload parsing
    device_registry: Device identity cache and Valkey-backed registry
    ingest_stats: Pipeline counters
    telemetry_buffer: Bounded raw-audit and telemetry buffers
    batch_flusher: Batched writes with retry and requeue
    store_writer: QuestDB writer for telemetry and raw-audit tables
    status_server: /health and /metrics HTTP endpoints
    mqtt_ingestor: MQTT ingestion service entry point
"""
