"""Tabla de umbrales de telemetría.

Es configuración, no código: cada regla es un registro
{metric, operator, limit, severity, alertType}. La tabla por defecto se puede
reemplazar por deployment con GATEWAY_THRESHOLDS_JSON.

Cada regla se evalúa por separado: un reporte con varias métricas fuera de
rango produce varias alertas. No hay debounce ni deduplicación.
"""

from __future__ import annotations

import logging
import operator
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

import orjson

from ..core.domain import METRIC_FIELDS, Alert

logger = logging.getLogger(__name__)

_OPERATORS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}


@dataclass(frozen=True)
class ThresholdRule:
    metric: str
    operator: str
    limit: float
    severity: str
    alert_type: str

    def __post_init__(self):
        if self.metric not in METRIC_FIELDS:
            raise ValueError(f"unknown metric: {self.metric}")
        if self.operator not in _OPERATORS:
            raise ValueError(f"unsupported operator: {self.operator}")

    def breached(self, value: Optional[float]) -> bool:
        # None = la métrica no vino en el reporte. 0 sí es un valor.
        if value is None:
            return False
        return _OPERATORS[self.operator](value, self.limit)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ThresholdRule":
        metric = record["metric"]
        # Se acepta el nombre del payload (cpuUsage) o el interno (cpu_usage)
        wire_to_name = {wire: name for name, wire in METRIC_FIELDS.items()}
        metric = wire_to_name.get(metric, metric)
        return cls(
            metric=metric,
            operator=record.get("operator", ">"),
            limit=float(record["limit"]),
            severity=record.get("severity", "warning"),
            alert_type=record.get("alertType") or record.get("alert_type") or f"{metric}_threshold",
        )


DEFAULT_RULES: tuple[ThresholdRule, ...] = (
    ThresholdRule("cpu_usage", ">", 85, "warning", "high_cpu_usage"),
    ThresholdRule("memory_usage", ">", 90, "critical", "high_memory_usage"),
    ThresholdRule("temperature", ">", 70, "warning", "high_temperature"),
    ThresholdRule("battery_level", "<", 20, "warning", "low_battery"),
)


class ThresholdTable:
    """Conjunto de reglas evaluadas contra cada reporte."""

    def __init__(self, rules: Optional[tuple[ThresholdRule, ...]] = None):
        self._rules = tuple(DEFAULT_RULES if rules is None else rules)

    @property
    def rules(self) -> tuple[ThresholdRule, ...]:
        return self._rules

    def evaluate(self, device_id: str, metrics: Mapping[str, Optional[float]], timestamp: datetime) -> list[Alert]:
        alerts = []
        for rule in self._rules:
            value = metrics.get(rule.metric)
            if rule.breached(value):
                alerts.append(
                    Alert(
                        device_id=device_id,
                        alert_type=rule.alert_type,
                        severity=rule.severity,
                        measured_value=value,
                        threshold=rule.limit,
                        timestamp=timestamp,
                    )
                )
        return alerts

    def as_device_config(self) -> dict[str, float]:
        """Umbrales en el formato del comando `configure`."""
        return {METRIC_FIELDS[rule.metric]: rule.limit for rule in self._rules}

    @classmethod
    def from_records(cls, records: list[Mapping[str, Any]]) -> "ThresholdTable":
        return cls(tuple(ThresholdRule.from_record(r) for r in records))

    @classmethod
    def from_env(cls) -> "ThresholdTable":
        raw = os.getenv("GATEWAY_THRESHOLDS_JSON", "").strip()
        if not raw:
            return cls()
        try:
            records = orjson.loads(raw)
            table = cls.from_records(records)
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error("[TELEMETRY] Invalid GATEWAY_THRESHOLDS_JSON, using defaults: %s", e)
            return cls()
        logger.info("[TELEMETRY] Loaded %d threshold rules from environment", len(table.rules))
        return table
