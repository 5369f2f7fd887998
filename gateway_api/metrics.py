"""Métricas Prometheus del gateway.

Se exponen en /metrics (ver main.py).
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

MQTT_MESSAGES_ROUTED = Counter(
    "gateway_mqtt_messages_total",
    "Inbound MQTT messages by category and routing status",
    ["category", "status"],  # handled, malformed, unknown, error
)

BROKER_CONNECTED = Gauge(
    "gateway_broker_connected",
    "MQTT broker connection status",
)

BROKER_RECONNECT_ATTEMPTS = Counter(
    "gateway_broker_reconnect_attempts_total",
    "MQTT reconnection attempts",
)

COMMANDS_DISPATCHED = Counter(
    "gateway_commands_dispatched_total",
    "Commands published to devices",
    ["command"],
)

COMMANDS_SETTLED = Counter(
    "gateway_commands_settled_total",
    "Commands settled by outcome",
    ["outcome"],  # completed, failed, timeout
)

COMMAND_LATENCY = Histogram(
    "gateway_command_latency_seconds",
    "Time from dispatch to response",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

PENDING_COMMANDS = Gauge(
    "gateway_pending_commands",
    "Commands awaiting a response",
)

LATE_RESPONSES = Counter(
    "gateway_late_responses_total",
    "Responses for unknown or already settled commands",
)

THRESHOLD_ALERTS = Counter(
    "gateway_threshold_alerts_total",
    "Threshold alerts raised by telemetry",
    ["alert_type", "severity"],
)

PERSISTENCE_WRITES = Counter(
    "gateway_persistence_writes_total",
    "Fire-and-forget persistence writes by status",
    ["status"],  # ok, error, dropped
)
