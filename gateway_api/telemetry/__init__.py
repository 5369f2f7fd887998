"""Ingesta de telemetría, umbrales y presencia de dispositivos."""

from .directory import DeviceDirectory
from .engine import LIFECYCLE_EVENTS, TelemetryEngine
from .presence import ConnectedDeviceSet
from .thresholds import DEFAULT_RULES, ThresholdRule, ThresholdTable

__all__ = [
    "ConnectedDeviceSet",
    "DEFAULT_RULES",
    "DeviceDirectory",
    "LIFECYCLE_EVENTS",
    "TelemetryEngine",
    "ThresholdRule",
    "ThresholdTable",
]
