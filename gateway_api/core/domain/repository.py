"""Interfaz abstracta del colaborador de persistencia.

El core no conoce el esquema relacional de la aplicación. Cualquier
implementación (SQLAlchemy, en memoria para tests) cumple esta interfaz.
Todas las escrituras se consideran falibles: el gateway las ejecuta a través
del PersistenceWriter y solo registra los fallos.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from .access import AccessEvent
from .command import CommandRecord, CommandStatus
from .device import Device, DeviceStatus
from .telemetry import TelemetrySnapshot


class DeviceRepository(ABC):
    """Persistencia de dispositivos, comandos, telemetría y accesos."""

    @abstractmethod
    def get_device(self, device_id: str) -> Optional[Device]:
        pass

    @abstractmethod
    def list_active_devices(self) -> list[Device]:
        """Dispositivos cuyo status no es decommissioned."""
        pass

    @abstractmethod
    def create_device(self, device: Device) -> Device:
        pass

    @abstractmethod
    def update_device_state(
        self,
        device_id: str,
        *,
        status: Optional[DeviceStatus] = None,
        last_seen: Optional[datetime] = None,
        firmware_version: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """Actualiza los campos dados. Un dispositivo decommissioned solo
        acepta status=DECOMMISSIONED; cualquier otra escritura se ignora."""
        pass

    @abstractmethod
    def create_command_record(self, record: CommandRecord) -> None:
        pass

    @abstractmethod
    def finalize_command_record(
        self,
        correlation_id: str,
        status: CommandStatus,
        *,
        result: Optional[Any] = None,
        error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        """Cierra un registro que sigue pending. Retorna False si ya estaba cerrado."""
        pass

    @abstractmethod
    def upsert_snapshot(self, snapshot: TelemetrySnapshot) -> None:
        pass

    @abstractmethod
    def create_access_log(self, event: AccessEvent) -> None:
        pass

    @abstractmethod
    def mark_stale_pending_commands(self, before: datetime, status: CommandStatus, error: str) -> int:
        pass
