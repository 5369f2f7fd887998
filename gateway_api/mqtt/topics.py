"""Esquema de topics del bus.

Entrantes:  {root}/{tenantId}/{category}/{deviceId}/{messageKind}
            {root}/{tenantId}/alerts/{deviceId}
            {root}/system/{component}/status
Salientes:  {root}/{tenantId}/devices/{deviceId}/commands
Liveness:   {root}/system/backend/status (retained)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

CATEGORY_DEVICES = "devices"
CATEGORY_ACCESS_POINTS = "access-points"
CATEGORY_ALERTS = "alerts"
CATEGORY_SYSTEM = "system"

SYSTEM_SEGMENT = "system"
MIN_SEGMENTS = 4

_WILDCARDS = ("+", "#")


@dataclass(frozen=True)
class TopicInfo:
    """Topic entrante descompuesto en sus partes posicionales."""
    tenant_id: str
    category: str
    device_id: str
    message_kind: Optional[str]
    topic: str


def subscription_patterns(root: str) -> list[str]:
    """Patrones wildcard que se (re)suscriben en cada conexión."""
    return [
        f"{root}/+/{CATEGORY_DEVICES}/+/status",
        f"{root}/+/{CATEGORY_DEVICES}/+/metrics",
        f"{root}/+/{CATEGORY_DEVICES}/+/events",
        f"{root}/+/{CATEGORY_DEVICES}/+/response",
        f"{root}/+/{CATEGORY_ACCESS_POINTS}/+/events",
        f"{root}/+/{CATEGORY_ALERTS}/+",
        f"{root}/{SYSTEM_SEGMENT}/+/status",
    ]


def command_topic(root: str, tenant_id: str, device_id: str) -> str:
    return f"{root}/{tenant_id}/{CATEGORY_DEVICES}/{device_id}/commands"


def backend_status_topic(root: str) -> str:
    return f"{root}/{SYSTEM_SEGMENT}/backend/status"


def parse_topic(topic: str, root: str) -> Optional[TopicInfo]:
    """Descompone un topic entrante. Retorna None si no tiene la forma esperada."""
    parts = topic.split("/")
    if len(parts) < MIN_SEGMENTS or parts[0] != root:
        return None
    if any(not p or p in _WILDCARDS for p in parts):
        return None

    if parts[1] == SYSTEM_SEGMENT:
        # {root}/system/{component}/status
        return TopicInfo(
            tenant_id=SYSTEM_SEGMENT,
            category=CATEGORY_SYSTEM,
            device_id=parts[2],
            message_kind=parts[3],
            topic=topic,
        )

    return TopicInfo(
        tenant_id=parts[1],
        category=parts[2],
        device_id=parts[3],
        message_kind=parts[4] if len(parts) > 4 else None,
        topic=topic,
    )
