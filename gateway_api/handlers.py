"""Handlers por categoría de topic.

El TopicRouter ya decodificó el JSON; aquí se valida el payload con su
modelo pydantic (MalformedMessage si no cumple) y se delega en el engine,
el correlator o el fan-out.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable

from .commands import CommandCorrelator
from .core.domain import AccessEvent, DeviceAlert
from .events import EventFanout
from .mqtt.topics import CATEGORY_ACCESS_POINTS, CATEGORY_ALERTS, CATEGORY_DEVICES, CATEGORY_SYSTEM, TopicInfo
from .mqtt.router import TopicRouter
from .mqtt.validators import (
    AccessEventPayload,
    CommandResponsePayload,
    DeviceAlertPayload,
    DeviceEventPayload,
    StatusPayload,
    TelemetryPayload,
    require_payload,
)
from .telemetry import ConnectedDeviceSet, TelemetryEngine

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceMessageHandlers:
    def __init__(
        self,
        engine: TelemetryEngine,
        correlator: CommandCorrelator,
        fanout: EventFanout,
        presence: ConnectedDeviceSet,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._engine = engine
        self._correlator = correlator
        self._fanout = fanout
        self._presence = presence
        self._clock = clock
        self._components: dict[str, dict[str, Any]] = {}
        self._components_lock = threading.Lock()

    def register_all(self, router: TopicRouter) -> None:
        router.register(CATEGORY_DEVICES, self.handle_device)
        router.register(CATEGORY_ACCESS_POINTS, self.handle_access_point)
        router.register(CATEGORY_ALERTS, self.handle_alert)
        router.register(CATEGORY_SYSTEM, self.handle_system)

    def handle_device(self, info: TopicInfo, payload: dict[str, Any]) -> None:
        kind = info.message_kind
        device = self._engine.directory.resolve(info.tenant_id, info.device_id)
        if device is None:
            return

        if kind == "response":
            # Un dispositivo recién dado de baja aún responde a su shutdown
            self._correlator.handle_response(
                device.id, require_payload(CommandResponsePayload, payload, info.topic),
            )
            if device.is_decommissioned:
                return
        elif device.is_decommissioned:
            logger.info("[HANDLER] Ignoring %s from decommissioned device %s", kind, device.id)
            return
        elif kind == "status":
            self._engine.ingest_status(device.tenant_id, device.id, require_payload(StatusPayload, payload, info.topic))
        elif kind == "metrics":
            self._engine.ingest_metrics(device.tenant_id, device.id, require_payload(TelemetryPayload, payload, info.topic))
        elif kind == "events":
            self._engine.ingest_event(device.tenant_id, device.id, require_payload(DeviceEventPayload, payload, info.topic))
        else:
            logger.warning("[HANDLER] Unknown device message type %s (topic=%s)", kind, info.topic)
            return

        self._presence.touch(device.id, self._clock())
        self._fanout.publish_device_update(device.tenant_id, device.id, kind, payload)

    def handle_access_point(self, info: TopicInfo, payload: dict[str, Any]) -> None:
        if info.message_kind != "events":
            logger.debug("[HANDLER] Ignoring access-point message %s", info.topic)
            return

        data = require_payload(AccessEventPayload, payload, info.topic)
        event = AccessEvent(
            device_id=info.device_id,
            tenant_id=info.tenant_id,
            access_method=data.access_method,
            granted=data.granted,
            timestamp=self._clock(),
            user_id=data.user_id,
            failure_reason=None if data.granted else data.failure_reason,
            metadata=data.metadata,
        )
        self._fanout.publish_access_event(info.tenant_id, event)

    def handle_alert(self, info: TopicInfo, payload: dict[str, Any]) -> None:
        device = self._engine.admit(info.tenant_id, info.device_id)
        if device is None:
            return

        data = require_payload(DeviceAlertPayload, payload, info.topic)
        alert = DeviceAlert(
            device_id=device.id,
            alert_type=data.alert_type,
            severity=data.severity,
            timestamp=self._clock(),
            description=data.description,
            metadata=data.metadata,
        )
        self._fanout.publish_device_alert(device.tenant_id, alert)

    def handle_system(self, info: TopicInfo, payload: dict[str, Any]) -> None:
        component = info.device_id
        with self._components_lock:
            self._components[component] = {
                "status": payload.get("status"),
                "version": payload.get("version"),
                "receivedAt": self._clock().isoformat(),
            }
        logger.debug("[HANDLER] System component %s status=%s", component, payload.get("status"))

    def system_components(self) -> dict[str, dict[str, Any]]:
        with self._components_lock:
            return {k: dict(v) for k, v in self._components.items()}
