"""Implementación SQLAlchemy del colaborador de persistencia."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine, RowMapping

from ...core.domain import (
    AccessEvent,
    CommandRecord,
    CommandStatus,
    Device,
    DeviceRepository,
    DeviceStatus,
    TelemetrySnapshot,
)
from .tables import access_logs, device_commands, device_status, devices, metadata

logger = logging.getLogger(__name__)


def _row_to_device(row: RowMapping) -> Device:
    return Device(
        id=row["id"],
        tenant_id=row["tenant_id"],
        status=DeviceStatus.parse(row["status"]) or DeviceStatus.OFFLINE,
        name=row["name"],
        device_type=row["device_type"],
        last_seen=row["last_seen"],
        firmware_version=row["firmware_version"],
        ip_address=row["ip_address"],
        features=list(row["features"] or []),
    )


class SqlDeviceRepository(DeviceRepository):
    """Persistencia sobre SQLAlchemy Core.

    Cada método abre su propia transacción (engine.begin()), por lo que es
    seguro llamarlo desde los workers del PersistenceWriter.
    """

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        metadata.create_all(self._engine)
        logger.info("[DB] Schema ready (devices, device_commands, device_status, access_logs, audit_logs)")

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(devices).where(devices.c.id == device_id)
            ).mappings().first()
        return _row_to_device(row) if row else None

    def list_active_devices(self) -> list[Device]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                select(devices)
                .where(devices.c.status != DeviceStatus.DECOMMISSIONED.value)
                .order_by(devices.c.id)
            ).mappings().all()
        return [_row_to_device(r) for r in rows]

    def create_device(self, device: Device) -> Device:
        now = datetime.now(timezone.utc)
        device = replace(device, last_seen=device.last_seen or now)
        with self._engine.begin() as conn:
            conn.execute(
                insert(devices).values(
                    id=device.id,
                    tenant_id=device.tenant_id,
                    name=device.name,
                    device_type=device.device_type,
                    status=device.status.value,
                    last_seen=device.last_seen,
                    firmware_version=device.firmware_version,
                    ip_address=device.ip_address,
                    features=device.features,
                    created_at=now,
                )
            )
        return device

    def update_device_state(
        self,
        device_id: str,
        *,
        status: Optional[DeviceStatus] = None,
        last_seen: Optional[datetime] = None,
        firmware_version: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        values: dict[str, Any] = {}
        if status is not None:
            values["status"] = status.value
        if last_seen is not None:
            values["last_seen"] = last_seen
        if firmware_version:
            values["firmware_version"] = firmware_version
        if ip_address:
            values["ip_address"] = ip_address
        if not values:
            return

        stmt = update(devices).where(devices.c.id == device_id)
        if status is not DeviceStatus.DECOMMISSIONED:
            # decommissioned es terminal: solo remove_device lo escribe
            stmt = stmt.where(devices.c.status != DeviceStatus.DECOMMISSIONED.value)
        with self._engine.begin() as conn:
            result = conn.execute(stmt.values(**values))
        if result.rowcount == 0:
            logger.warning("[DB] State update skipped for unknown or decommissioned device: %s", device_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_command_record(self, record: CommandRecord) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                insert(device_commands).values(
                    id=record.correlation_id,
                    device_id=record.device_id,
                    tenant_id=record.tenant_id,
                    command=record.command,
                    parameters=record.parameters,
                    status=record.status.value,
                    issuer_id=record.issuer_id,
                    sent_at=record.sent_at,
                )
            )

    def finalize_command_record(
        self,
        correlation_id: str,
        status: CommandStatus,
        *,
        result: Optional[Any] = None,
        error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        if not status.is_terminal:
            raise ValueError(f"cannot finalize command with status {status.value}")

        with self._engine.begin() as conn:
            res = conn.execute(
                update(device_commands)
                .where(device_commands.c.id == correlation_id)
                .where(device_commands.c.status == CommandStatus.PENDING.value)
                .values(
                    status=status.value,
                    result=result,
                    error=error,
                    completed_at=completed_at or datetime.now(timezone.utc),
                )
            )
        if res.rowcount == 0:
            logger.warning("[DB] Command %s already finalized or missing", correlation_id)
            return False
        return True

    def get_command_record(self, correlation_id: str) -> Optional[CommandRecord]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(device_commands).where(device_commands.c.id == correlation_id)
            ).mappings().first()
        if not row:
            return None
        return CommandRecord(
            correlation_id=row["id"],
            device_id=row["device_id"],
            tenant_id=row["tenant_id"],
            command=row["command"],
            parameters=row["parameters"] or {},
            status=CommandStatus(row["status"]),
            sent_at=row["sent_at"],
            issuer_id=row["issuer_id"],
            result=row["result"],
            error=row["error"],
            completed_at=row["completed_at"],
        )

    def mark_stale_pending_commands(self, before: datetime, status: CommandStatus, error: str) -> int:
        with self._engine.begin() as conn:
            res = conn.execute(
                update(device_commands)
                .where(device_commands.c.status == CommandStatus.PENDING.value)
                .where(device_commands.c.sent_at < before)
                .values(status=status.value, error=error, completed_at=datetime.now(timezone.utc))
            )
        return int(res.rowcount or 0)

    # ------------------------------------------------------------------
    # Telemetry / access
    # ------------------------------------------------------------------

    def upsert_snapshot(self, snapshot: TelemetrySnapshot) -> None:
        values = {
            "tenant_id": snapshot.tenant_id,
            "status": snapshot.status,
            "last_heartbeat": snapshot.last_heartbeat,
            **snapshot.metrics(),
        }
        with self._engine.begin() as conn:
            res = conn.execute(
                update(device_status)
                .where(device_status.c.device_id == snapshot.device_id)
                .values(**values)
            )
            if res.rowcount == 0:
                conn.execute(insert(device_status).values(device_id=snapshot.device_id, **values))

    def get_snapshot(self, device_id: str) -> Optional[TelemetrySnapshot]:
        with self._engine.connect() as conn:
            row = conn.execute(
                select(device_status).where(device_status.c.device_id == device_id)
            ).mappings().first()
        return TelemetrySnapshot(**dict(row)) if row else None

    def create_access_log(self, event: AccessEvent) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                insert(access_logs).values(
                    device_id=event.device_id,
                    tenant_id=event.tenant_id,
                    user_id=event.user_id,
                    access_method=event.access_method,
                    granted=event.granted,
                    failure_reason=None if event.granted else event.failure_reason,
                    details=event.metadata,
                    ip_address=event.metadata.get("ipAddress"),
                    user_agent=event.metadata.get("userAgent"),
                    access_time=event.timestamp,
                )
            )
