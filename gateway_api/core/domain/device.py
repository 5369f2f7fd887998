"""Dispositivo físico tal como lo ve el gateway.

El dueño del registro es la capa de persistencia; el gateway solo lee
identidad/tenant y escribe status/last_seen.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class DeviceStatus(str, Enum):
    """Estados persistidos de un dispositivo."""
    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"
    DECOMMISSIONED = "decommissioned"

    @classmethod
    def parse(cls, value: Any) -> Optional["DeviceStatus"]:
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


@dataclass
class Device:
    id: str
    tenant_id: str
    status: DeviceStatus = DeviceStatus.OFFLINE
    name: Optional[str] = None
    device_type: Optional[str] = None
    last_seen: Optional[datetime] = None
    firmware_version: Optional[str] = None
    ip_address: Optional[str] = None
    features: list[str] = field(default_factory=list)

    @property
    def is_decommissioned(self) -> bool:
        return self.status == DeviceStatus.DECOMMISSIONED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenantId": self.tenant_id,
            "status": self.status.value,
            "name": self.name,
            "deviceType": self.device_type,
            "lastSeen": self.last_seen.isoformat() if self.last_seen else None,
            "firmwareVersion": self.firmware_version,
            "ipAddress": self.ip_address,
        }
