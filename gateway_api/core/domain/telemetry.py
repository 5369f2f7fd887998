"""Telemetría y alertas de dispositivos."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Optional

# Campos métricos del snapshot (nombre interno -> nombre en el payload)
METRIC_FIELDS: dict[str, str] = {
    "cpu_usage": "cpuUsage",
    "memory_usage": "memoryUsage",
    "disk_usage": "diskUsage",
    "temperature": "temperature",
    "uptime_hours": "uptimeHours",
    "signal_strength": "signalStrength",
    "battery_level": "batteryLevel",
}


@dataclass
class TelemetrySnapshot:
    """Última lectura conocida de un dispositivo. No es una serie temporal."""
    device_id: str
    tenant_id: str
    last_heartbeat: datetime
    status: Optional[str] = None
    cpu_usage: Optional[float] = None
    memory_usage: Optional[float] = None
    disk_usage: Optional[float] = None
    temperature: Optional[float] = None
    uptime_hours: Optional[float] = None
    signal_strength: Optional[float] = None
    battery_level: Optional[float] = None

    def metrics(self) -> dict[str, Optional[float]]:
        return {name: getattr(self, name) for name in METRIC_FIELDS}

    def merged(self, report: dict[str, float], *, heartbeat: datetime, status: Optional[str] = None) -> "TelemetrySnapshot":
        """Nuevo snapshot: los campos presentes en el reporte pisan los anteriores."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(report)
        values["last_heartbeat"] = heartbeat
        if status is not None:
            values["status"] = status
        return TelemetrySnapshot(**values)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"deviceId": self.device_id, "status": self.status}
        for name, wire in METRIC_FIELDS.items():
            out[wire] = getattr(self, name)
        out["lastHeartbeat"] = self.last_heartbeat.isoformat()
        return out


@dataclass(frozen=True)
class Alert:
    """Alerta de umbral. El core no la retiene."""
    device_id: str
    alert_type: str
    severity: str
    measured_value: float
    threshold: float
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "alertType": self.alert_type,
            "severity": self.severity,
            "value": self.measured_value,
            "threshold": self.threshold,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class DeviceAlert:
    """Alerta originada por el propio dispositivo (topic alerts)."""
    device_id: str
    alert_type: str
    severity: str
    timestamp: datetime
    description: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "alertType": self.alert_type,
            "severity": self.severity,
            "description": self.description,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }
