"""Eventos de puntos de acceso (puertas, barreras)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class AccessEvent:
    device_id: str
    tenant_id: str
    access_method: str
    granted: bool
    timestamp: datetime
    user_id: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def location(self) -> Optional[str]:
        return self.metadata.get("location")

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "userId": self.user_id,
            "accessMethod": self.access_method,
            "granted": self.granted,
            "reason": self.failure_reason,
            "location": self.location,
            "timestamp": self.timestamp.isoformat(),
        }
