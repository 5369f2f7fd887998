"""Domain layer - Modelos e interfaces de colaboradores."""

from .access import AccessEvent
from .command import CommandRecord, CommandSettlement, CommandStatus, PendingCommand, TimerHandle
from .device import Device, DeviceStatus
from .observer import LoggingObserver, RealtimeObserver
from .repository import DeviceRepository
from .telemetry import METRIC_FIELDS, Alert, DeviceAlert, TelemetrySnapshot

__all__ = [
    "AccessEvent",
    "Alert",
    "CommandRecord",
    "CommandSettlement",
    "CommandStatus",
    "Device",
    "DeviceAlert",
    "DeviceRepository",
    "DeviceStatus",
    "LoggingObserver",
    "METRIC_FIELDS",
    "PendingCommand",
    "RealtimeObserver",
    "TelemetrySnapshot",
    "TimerHandle",
]
