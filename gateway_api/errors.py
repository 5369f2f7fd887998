"""Errores del gateway de dispositivos.

- DeviceNotFound: validación síncrona, sin efecto en la red
- DispatchFailure: el publish del comando falló
- BrokerUnavailable: conexión perdida o cerrada definitivamente
- MalformedMessage: payload entrante inválido (se descarta con warning)
- CommandTimeout: sin respuesta dentro del plazo (solo viaja en la liquidación)
"""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base de todos los errores del gateway."""


class DeviceNotFound(GatewayError):
    def __init__(self, device_id: str, reason: str = "not registered"):
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"Device '{device_id}' not found ({reason})")


class DispatchFailure(GatewayError):
    def __init__(self, device_id: Optional[str], message: str):
        self.device_id = device_id
        super().__init__(message)


class BrokerUnavailable(DispatchFailure):
    def __init__(self, message: str = "MQTT broker not connected", device_id: Optional[str] = None):
        super().__init__(device_id, message)


class MalformedMessage(GatewayError):
    def __init__(self, topic: str, detail: str):
        self.topic = topic
        self.detail = detail
        super().__init__(f"Malformed message on '{topic}': {detail}")


class CommandTimeout(GatewayError):
    def __init__(self, correlation_id: str, timeout_ms: int):
        self.correlation_id = correlation_id
        self.timeout_ms = timeout_ms
        super().__init__(f"Command {correlation_id} timed out after {timeout_ms}ms")
