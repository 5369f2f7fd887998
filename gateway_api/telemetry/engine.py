"""Telemetry & threshold engine.

Ingiere reportes de status y métricas:
0. Resuelve el dispositivo (DeviceDirectory): desconocido, de otro tenant o
   decommissioned → el reporte se descarta
1. Fusiona el reporte con el snapshot anterior (last-value-wins por campo)
2. Refresca last_heartbeat y el Device.status/last_seen persistido
3. Evalúa la tabla de umbrales sobre las métricas presentes en el reporte
4. Entrega cada alerta al sink (Event Fan-out)

Las escrituras a BD van por el PersistenceWriter (fire-and-forget), con el
device id como clave para conservar el orden por dispositivo.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from ..core.domain import Alert, Device, DeviceRepository, DeviceStatus, TelemetrySnapshot
from ..infrastructure.persistence.writer import PersistenceWriter
from ..metrics import THRESHOLD_ALERTS
from ..mqtt.validators import DeviceEventPayload, StatusPayload, TelemetryPayload
from .directory import DeviceDirectory
from .thresholds import ThresholdTable

logger = logging.getLogger(__name__)

AlertSink = Callable[[str, Alert], None]

# event_type -> status resultante
LIFECYCLE_EVENTS: dict[str, DeviceStatus] = {
    "device_startup": DeviceStatus.ONLINE,
    "device_shutdown": DeviceStatus.OFFLINE,
    "connection_lost": DeviceStatus.OFFLINE,
    "maintenance_mode": DeviceStatus.MAINTENANCE,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TelemetryEngine:
    def __init__(
        self,
        repository: DeviceRepository,
        writer: PersistenceWriter,
        alert_sink: AlertSink,
        thresholds: Optional[ThresholdTable] = None,
        clock: Callable[[], datetime] = _utcnow,
        directory: Optional[DeviceDirectory] = None,
    ):
        self._repository = repository
        self._directory = directory or DeviceDirectory(repository)
        self._writer = writer
        self._alert_sink = alert_sink
        self._thresholds = thresholds or ThresholdTable()
        self._clock = clock
        self._snapshots: dict[str, TelemetrySnapshot] = {}
        self._lock = threading.Lock()

    @property
    def thresholds(self) -> ThresholdTable:
        return self._thresholds

    @property
    def directory(self) -> DeviceDirectory:
        return self._directory

    def ingest_status(self, tenant_id: str, device_id: str, payload: StatusPayload) -> list[Alert]:
        """Reporte de status: actualiza status, firmware, ip y métricas."""
        device = self.admit(tenant_id, device_id)
        if device is None:
            return []

        status = DeviceStatus.parse(payload.status) if payload.status else DeviceStatus.ONLINE
        if status is None:
            logger.warning("[TELEMETRY] Invalid status %r from %s, assuming online", payload.status, device_id)
            status = DeviceStatus.ONLINE

        now = self._clock()
        report = payload.reported_metrics()
        snapshot = self._merge(device, report, now, status.value)

        self._writer.submit(
            device_id,
            self._repository.update_device_state,
            device_id,
            status=status,
            last_seen=now,
            firmware_version=payload.firmware_version,
            ip_address=payload.ip_address,
            description="update_device_state",
        )
        self._writer.submit(device_id, self._repository.upsert_snapshot, snapshot, description="upsert_snapshot")
        logger.debug("[TELEMETRY] Status %s for %s: %s", status.value, device_id, report)

        return self._check_thresholds(device, report, now)

    def ingest_metrics(self, tenant_id: str, device_id: str, payload: TelemetryPayload) -> list[Alert]:
        """Reporte periódico de métricas. No cambia el status del dispositivo."""
        device = self.admit(tenant_id, device_id)
        if device is None:
            return []

        now = self._clock()
        report = payload.reported_metrics()
        snapshot = self._merge(device, report, now)

        self._writer.submit(
            device_id,
            self._repository.update_device_state,
            device_id,
            last_seen=now,
            description="update_device_state",
        )
        self._writer.submit(device_id, self._repository.upsert_snapshot, snapshot, description="upsert_snapshot")

        return self._check_thresholds(device, report, now)

    def ingest_event(self, tenant_id: str, device_id: str, payload: DeviceEventPayload) -> Optional[DeviceStatus]:
        """Eventos de ciclo de vida. Retorna el nuevo status, o None si el evento no lo cambia."""
        device = self.admit(tenant_id, device_id)
        if device is None:
            return None

        status = LIFECYCLE_EVENTS.get(payload.event_type)
        if status is None:
            logger.info("[TELEMETRY] Unhandled event type %s from %s", payload.event_type, device_id)
            return None

        self._writer.submit(
            device_id,
            self._repository.update_device_state,
            device_id,
            status=status,
            last_seen=self._clock(),
            firmware_version=payload.data.get("firmwareVersion") or payload.data.get("firmware"),
            ip_address=payload.data.get("ipAddress"),
            description="update_device_state",
        )
        logger.info(
            "[TELEMETRY] Device %s %s -> %s (tenant=%s)", device_id, payload.event_type, status.value, device.tenant_id,
        )
        return status

    def admit(self, tenant_id: str, device_id: str) -> Optional[Device]:
        """Device al que pertenece el reporte, o None si el reporte se descarta.

        Descarta ids no registrados, ids registrados en otro tenant y
        dispositivos dados de baja (decommissioned es terminal).
        """
        device = self._directory.resolve(tenant_id, device_id)
        if device is None:
            return None
        if device.is_decommissioned:
            logger.info("[TELEMETRY] Ignoring report from decommissioned device %s", device_id)
            return None
        return device

    def get_snapshot(self, device_id: str) -> Optional[TelemetrySnapshot]:
        with self._lock:
            return self._snapshots.get(device_id)

    def forget(self, device_id: str) -> None:
        with self._lock:
            self._snapshots.pop(device_id, None)

    def _merge(
        self,
        device: Device,
        report: dict[str, float],
        now: datetime,
        status: Optional[str] = None,
    ) -> TelemetrySnapshot:
        with self._lock:
            previous = self._snapshots.get(device.id)
            if previous is None:
                previous = TelemetrySnapshot(device_id=device.id, tenant_id=device.tenant_id, last_heartbeat=now)
            snapshot = previous.merged(report, heartbeat=now, status=status)
            self._snapshots[device.id] = snapshot
        return snapshot

    def _check_thresholds(self, device: Device, report: dict[str, float], now: datetime) -> list[Alert]:
        alerts = self._thresholds.evaluate(device.id, report, now)
        for alert in alerts:
            THRESHOLD_ALERTS.labels(alert_type=alert.alert_type, severity=alert.severity).inc()
            logger.warning(
                "[TELEMETRY] Threshold alert device=%s %s value=%s threshold=%s",
                device.id, alert.alert_type, alert.measured_value, alert.threshold,
            )
            try:
                self._alert_sink(device.tenant_id, alert)
            except Exception:
                logger.exception("[TELEMETRY] Alert sink failed for %s", device.id)
        return alerts
