"""Esquema mínimo que el gateway lee y escribe.

El resto del esquema relacional pertenece a la aplicación multi-tenant.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

devices = Table(
    "devices",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("tenant_id", String(64), nullable=False, index=True),
    Column("name", String(200)),
    Column("device_type", String(50)),
    Column("status", String(20), nullable=False, default="offline"),
    Column("last_seen", DateTime(timezone=True)),
    Column("firmware_version", String(50)),
    Column("ip_address", String(64)),
    Column("features", JSON),
    Column("created_at", DateTime(timezone=True)),
)

device_commands = Table(
    "device_commands",
    metadata,
    Column("id", String(64), primary_key=True),  # correlation id
    Column("device_id", String(64), nullable=False, index=True),
    Column("tenant_id", String(64), nullable=False),
    Column("command", String(100), nullable=False),
    Column("parameters", JSON),
    Column("status", String(20), nullable=False, default="pending", index=True),
    Column("result", JSON),
    Column("error", Text),
    Column("issuer_id", String(64)),
    Column("sent_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True)),
)

device_status = Table(
    "device_status",
    metadata,
    Column("device_id", String(64), primary_key=True),
    Column("tenant_id", String(64), nullable=False),
    Column("status", String(20)),
    Column("cpu_usage", Float),
    Column("memory_usage", Float),
    Column("disk_usage", Float),
    Column("temperature", Float),
    Column("uptime_hours", Float),
    Column("signal_strength", Float),
    Column("battery_level", Float),
    Column("last_heartbeat", DateTime(timezone=True), nullable=False),
)

access_logs = Table(
    "access_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("device_id", String(64), nullable=False, index=True),
    Column("tenant_id", String(64), nullable=False, index=True),
    Column("user_id", String(64)),
    Column("access_method", String(50), nullable=False),
    Column("granted", Boolean, nullable=False),
    Column("failure_reason", String(100)),
    Column("details", JSON),
    Column("ip_address", String(64)),
    Column("user_agent", String(255)),
    Column("access_time", DateTime(timezone=True), nullable=False),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(50), nullable=False),
    Column("tenant_id", String(64), index=True),
    Column("user_id", String(64)),
    Column("details", JSON),
    Column("source", String(100)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
