"""Event fan-out.

Entrega los eventos internos al observer en tiempo real (siempre con alcance
de tenant) y al audit log. Nunca hay broadcast entre comunidades: un evento
sin tenant válido se descarta.

Eventos emitidos:
- device.update             mensaje de dispositivo procesado
- device.threshold_alert    alerta de umbral de telemetría
- device.alert              alerta originada por el dispositivo
- access.attempt            intento de acceso en un punto de acceso
- security.alert            acceso denegado (severidad por motivo)
- device.command_settled    liquidación de un comando
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..core.domain import AccessEvent, Alert, CommandSettlement, DeviceAlert, DeviceRepository, RealtimeObserver
from ..infrastructure.audit.audit_logger import AuditLogger
from ..infrastructure.persistence.writer import PersistenceWriter
from .severity import classify_denial

logger = logging.getLogger(__name__)

_WILDCARD_TENANTS = {"#", "+", "*"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventFanout:
    def __init__(
        self,
        observer: RealtimeObserver,
        audit: AuditLogger,
        writer: PersistenceWriter,
        repository: DeviceRepository,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._observer = observer
        self._audit = audit
        self._writer = writer
        self._repository = repository
        self._clock = clock

    def set_observer(self, observer: RealtimeObserver) -> None:
        self._observer = observer

    def publish_device_update(self, tenant_id: str, device_id: str, kind: str, payload: dict[str, Any]) -> None:
        self._emit(tenant_id, "device.update", {
            "deviceId": device_id,
            "messageType": kind,
            "payload": payload,
            "timestamp": self._clock().isoformat(),
        })

    def publish_alert(self, tenant_id: str, alert: Alert) -> None:
        """Alerta de umbral: tiempo real + audit."""
        self._emit(tenant_id, "device.threshold_alert", alert.to_dict())
        self._audit_async(alert.device_id, "threshold_alert", tenant_id, alert.to_dict())

    def publish_device_alert(self, tenant_id: str, alert: DeviceAlert) -> None:
        self._audit_async(alert.device_id, "device_alert", tenant_id, alert.to_dict())
        self._emit(tenant_id, "device.alert", alert.to_dict())

        if alert.severity == "critical":
            logger.error(
                "[FANOUT] CRITICAL ALERT from device %s tenant=%s: %s %s",
                alert.device_id, tenant_id, alert.alert_type, alert.description or "",
            )
        else:
            logger.warning(
                "[FANOUT] Device alert from %s: %s severity=%s",
                alert.device_id, alert.alert_type, alert.severity,
            )

    def publish_access_event(self, tenant_id: str, event: AccessEvent) -> Optional[str]:
        """Registra el intento de acceso y lo emite.

        Un acceso denegado genera además security.alert. Retorna la
        severidad de esa alerta, o None si el acceso fue concedido.
        """
        self._writer.submit(
            event.device_id,
            self._repository.create_access_log,
            event,
            description="create_access_log",
        )
        self._audit_async(event.device_id, "access_attempt", tenant_id, event.to_dict(), user_id=event.user_id)
        self._emit(tenant_id, "access.attempt", event.to_dict())

        logger.info(
            "[FANOUT] Access %s for user %s at device %s (tenant=%s method=%s reason=%s)",
            "granted" if event.granted else "denied",
            event.user_id, event.device_id, tenant_id, event.access_method, event.failure_reason,
        )

        if event.granted:
            return None

        severity = classify_denial(event.failure_reason)
        self._emit(tenant_id, "security.alert", {
            "type": "access_denied",
            "deviceId": event.device_id,
            "userId": event.user_id,
            "reason": event.failure_reason,
            "severity": severity,
            "timestamp": event.timestamp.isoformat(),
        })
        return severity

    def publish_command_settled(self, settlement: CommandSettlement) -> None:
        self._emit(settlement.tenant_id, "device.command_settled", settlement.to_dict())

    # ------------------------------------------------------------------

    def _emit(self, tenant_id: Optional[str], event_name: str, payload: dict[str, Any]) -> None:
        if not tenant_id or tenant_id in _WILDCARD_TENANTS:
            logger.warning("[FANOUT] Dropping %s without a valid tenant (tenant=%r)", event_name, tenant_id)
            return
        try:
            self._observer.emit_to_tenant(tenant_id, event_name, payload)
        except Exception:
            logger.exception("[FANOUT] Observer failed for %s tenant=%s", event_name, tenant_id)

    def _audit_async(
        self,
        key: str,
        event_type: str,
        tenant_id: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
    ) -> None:
        self._writer.submit(
            key,
            self._audit.log_event,
            event_type,
            tenant_id,
            details,
            user_id=user_id,
            description=f"audit:{event_type}",
        )
