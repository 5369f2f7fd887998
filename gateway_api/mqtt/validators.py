"""Validadores de payloads MQTT entrantes.

Decodifica con orjson y valida con modelos pydantic. Acepta tanto el
payload directo como el envelope legado {deviceId, timestamp, type, payload}.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

import orjson
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import MalformedMessage

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

RESPONSE_OUTCOMES = ("completed", "failed")


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)


class CommandResponsePayload(_Payload):
    """Respuesta de un dispositivo a un comando.

    Formato esperado:
    {
        "correlationId": "cmd_1706688000123_a1b2c3d4e",
        "outcome": "completed",
        "result": {"locked": true},
        "error": null
    }
    """

    correlation_id: str = Field(validation_alias=AliasChoices("correlationId", "commandId", "correlation_id"))
    outcome: Optional[str] = Field(default=None, validation_alias=AliasChoices("outcome", "status"))
    result: Any = None
    error: Optional[str] = None

    @field_validator("correlation_id")
    @classmethod
    def validate_correlation_id(cls, v):
        if not v or not v.strip():
            raise ValueError("correlationId is required")
        return v.strip()

    @property
    def normalized_outcome(self) -> Optional[str]:
        value = (self.outcome or "").strip().lower()
        return value if value in RESPONSE_OUTCOMES else None


class TelemetryPayload(_Payload):
    cpu_usage: Optional[float] = Field(default=None, validation_alias=AliasChoices("cpuUsage", "cpu_usage"))
    memory_usage: Optional[float] = Field(default=None, validation_alias=AliasChoices("memoryUsage", "memory_usage"))
    disk_usage: Optional[float] = Field(default=None, validation_alias=AliasChoices("diskUsage", "disk_usage"))
    temperature: Optional[float] = None
    uptime_hours: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("uptimeHours", "uptime", "uptime_hours"),
    )
    signal_strength: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("signalStrength", "signal_strength"),
    )
    battery_level: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("batteryLevel", "battery_level"),
    )

    @field_validator(
        "cpu_usage", "memory_usage", "disk_usage", "temperature",
        "uptime_hours", "signal_strength", "battery_level",
    )
    @classmethod
    def validate_finite(cls, v):
        if v is not None and (math.isnan(v) or math.isinf(v)):
            raise ValueError("metric value must be finite")
        return v

    def reported_metrics(self) -> dict[str, float]:
        """Solo las métricas presentes en este reporte."""
        return {k: v for k, v in self.model_dump(include=set(TelemetryPayload.model_fields)).items() if v is not None}


class StatusPayload(TelemetryPayload):
    status: Optional[str] = None
    firmware_version: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("firmwareVersion", "firmware"),
    )
    ip_address: Optional[str] = Field(default=None, validation_alias=AliasChoices("ipAddress", "ip_address"))


class DeviceEventPayload(_Payload):
    event_type: str = Field(validation_alias=AliasChoices("eventType", "event_type"))
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AccessEventPayload(_Payload):
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("userId", "user_id"))
    access_method: str = Field(validation_alias=AliasChoices("accessMethod", "access_method"))
    granted: bool
    failure_reason: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("failureReason", "reason", "failure_reason"),
    )
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeviceAlertPayload(_Payload):
    alert_type: str = Field(validation_alias=AliasChoices("alertType", "alert_type"))
    severity: str = "info"
    description: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("severity")
    @classmethod
    def normalize_severity(cls, v):
        return v.strip().lower()


@dataclass
class ValidationResult(Generic[M]):
    """Resultado de validación."""

    valid: bool
    payload: Optional[M] = None
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)


def decode_payload(topic: str, raw: bytes) -> dict[str, Any]:
    """Decodifica el payload JSON de un mensaje.

    Raises:
        MalformedMessage: si no es JSON o no es un objeto
    """
    if not raw:
        return {}
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise MalformedMessage(topic, f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessage(topic, f"expected JSON object, got {type(data).__name__}")
    return unwrap_envelope(data)


def unwrap_envelope(data: dict[str, Any]) -> dict[str, Any]:
    """Extrae `payload` del envelope legado {deviceId, timestamp, type, payload}."""
    inner = data.get("payload")
    if isinstance(inner, dict) and "type" in data:
        return inner
    return data


def validate_payload(model: type[M], data: dict[str, Any]) -> ValidationResult[M]:
    """Valida un payload contra un modelo pydantic."""
    try:
        return ValidationResult(valid=True, payload=model.model_validate(data))
    except ValidationError as e:
        logger.debug("[MQTT_VALIDATOR] %s validation failed: %s", model.__name__, e)
        return ValidationResult(valid=False, error=_summarize(e))


def require_payload(model: type[M], data: dict[str, Any], topic: str) -> M:
    """Como validate_payload, pero lanza MalformedMessage si no es válido."""
    result = validate_payload(model, data)
    if not result.valid:
        raise MalformedMessage(topic, result.error or "validation failed")
    return result.payload


def _summarize(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "payload"
        parts.append(f"{loc}: {item.get('msg')}")
    return "; ".join(parts)
