"""DeviceGateway: dueño del ciclo de vida del subsistema de dispositivos.

Construye y conecta los componentes con la configuración inyectada:

    broker ─► TopicRouter ─► handlers ─► TelemetryEngine / CommandCorrelator
                                               │
                                               ▼
                                          EventFanout ─► observer (tenant) + audit

No hay estado global: la app (main.py) o el CLI crean una instancia, la
arrancan y la detienen.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Optional

from .commands import CommandCorrelator
from .commands.correlator import TimerFactory, thread_timer, utcnow
from .config import GatewayConfig
from .core.domain import (
    CommandStatus,
    Device,
    DeviceRepository,
    DeviceStatus,
    LoggingObserver,
    RealtimeObserver,
    TelemetrySnapshot,
)
from .errors import BrokerUnavailable, DeviceNotFound, DispatchFailure
from .events import EventFanout
from .handlers import DeviceMessageHandlers
from .infrastructure.audit.audit_logger import AuditLogger
from .infrastructure.persistence.writer import PersistenceWriter
from .mqtt.config import MQTTConfig
from .mqtt.connection import BrokerConnectionManager, ConnectionListener, create_paho_client
from .mqtt.router import TopicRouter
from .telemetry import ConnectedDeviceSet, DeviceDirectory, TelemetryEngine, ThresholdTable

logger = logging.getLogger(__name__)

ABANDONED_COMMAND_ERROR = "abandoned: gateway restarted before a response arrived"


class DeviceGateway(ConnectionListener):
    """Gateway de comandos y telemetría de dispositivos."""

    def __init__(
        self,
        repository: DeviceRepository,
        mqtt_config: MQTTConfig,
        config: Optional[GatewayConfig] = None,
        observer: Optional[RealtimeObserver] = None,
        audit: Optional[AuditLogger] = None,
        thresholds: Optional[ThresholdTable] = None,
        client_factory=create_paho_client,
        timer_factory: TimerFactory = thread_timer,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config or GatewayConfig()
        self._mqtt_config = mqtt_config
        self._repository = repository
        self._clock = clock
        self._started = False
        self._fatal_error: Optional[BrokerUnavailable] = None

        self.writer = PersistenceWriter(
            num_workers=self._config.writer_workers,
            max_queue_size=self._config.writer_queue_size,
        )
        self.presence = ConnectedDeviceSet()
        self.directory = DeviceDirectory(repository, ttl_seconds=self._config.device_cache_ttl_seconds)
        self.fanout = EventFanout(
            observer or LoggingObserver(),
            audit or AuditLogger(),
            self.writer,
            repository,
            clock=clock,
        )
        self.engine = TelemetryEngine(
            repository,
            self.writer,
            alert_sink=self.fanout.publish_alert,
            thresholds=thresholds,
            clock=clock,
            directory=self.directory,
        )
        self.router = TopicRouter(mqtt_config.topic_root)
        self.connection = BrokerConnectionManager(mqtt_config, self.router.route, client_factory=client_factory)
        self.correlator = CommandCorrelator(
            repository,
            self.connection,
            self.writer,
            topic_root=mqtt_config.topic_root,
            default_timeout_ms=self._config.default_timeout_ms,
            timer_factory=timer_factory,
            clock=clock,
        )
        self.correlator.add_settlement_listener(self.fanout.publish_command_settled)

        self.handlers = DeviceMessageHandlers(self.engine, self.correlator, self.fanout, self.presence, clock=clock)
        self.handlers.register_all(self.router)
        self.connection.add_listener(self)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "DeviceGateway":
        if self._started:
            return self
        self.writer.start()
        if self._config.reconcile_on_start:
            self.reconcile_pending_commands()
        self.connection.connect()
        self._started = True
        logger.info("[GATEWAY] Started (topic_root=%s)", self._mqtt_config.topic_root)
        return self

    def stop(self) -> None:
        if not self._started:
            return
        discarded = self.correlator.shutdown()
        self.presence.clear()
        self.directory.clear()
        self.connection.disconnect()
        self.writer.stop(drain=True)
        self._started = False
        logger.info("[GATEWAY] Stopped (discarded_pending=%d)", discarded)

    def add_connection_listener(self, listener: ConnectionListener) -> None:
        self.connection.add_listener(listener)

    def reconcile_pending_commands(self) -> int:
        """Cierra como timeout los registros que quedaron pending de una ejecución anterior."""
        try:
            count = self._repository.mark_stale_pending_commands(
                self._clock(), CommandStatus.TIMEOUT, ABANDONED_COMMAND_ERROR,
            )
        except Exception as e:
            logger.error("[GATEWAY] Startup reconciliation failed: %s", e)
            return 0
        if count:
            logger.warning("[GATEWAY] Reconciled %d abandoned pending commands as timeout", count)
        return count

    # ------------------------------------------------------------------
    # ConnectionListener
    # ------------------------------------------------------------------

    def on_connected(self) -> None:
        self._fatal_error = None
        if self._config.refresh_status_on_connect:
            # Fuera del thread de red de paho: lee la BD y publica N comandos
            threading.Thread(target=self.request_status_refresh, daemon=True, name="status-refresh").start()

    def on_disconnected(self, reason: str) -> None:
        logger.warning("[GATEWAY] Broker connection lost: %s", reason)

    def on_reconnecting(self, attempt: int, max_attempts: int) -> None:
        logger.info("[GATEWAY] Waiting for broker (attempt %d/%d)", attempt, max_attempts)

    def on_error(self, error: BrokerUnavailable) -> None:
        self._fatal_error = error
        logger.error("[GATEWAY] mqtt_error: %s", error)

    def request_status_refresh(self) -> list[str]:
        """Pide get_status a todo dispositivo activo (no hay replay en el bus)."""
        try:
            devices = self._repository.list_active_devices()
        except Exception as e:
            logger.error("[GATEWAY] Could not list devices for status refresh: %s", e)
            return []
        cids = self.correlator.bulk_command([d.id for d in devices], "get_status")
        logger.info("[GATEWAY] Requested status from %d/%d devices", len(cids), len(devices))
        return cids

    # ------------------------------------------------------------------
    # Device management
    # ------------------------------------------------------------------

    def register_device(self, device: Device) -> Device:
        """Registra un dispositivo (offline) y le envía su configuración."""
        created = self._repository.create_device(replace(device, status=DeviceStatus.OFFLINE))
        self.directory.put(created)
        try:
            cid = self.correlator.send_command(created.id, "configure", self.device_configuration(created))
            logger.info("[GATEWAY] Registered device %s tenant=%s configure=%s", created.id, created.tenant_id, cid)
        except DispatchFailure as e:
            logger.warning("[GATEWAY] Registered device %s but configure failed: %s", created.id, e)
        return created

    def remove_device(self, device_id: str) -> None:
        """Envía shutdown, lo saca de los conectados y lo marca decommissioned.

        Raises:
            DeviceNotFound: si no existe o ya estaba dado de baja
        """
        device = self._repository.get_device(device_id)
        if device is None or device.is_decommissioned:
            raise DeviceNotFound(device_id, reason="not registered" if device is None else "decommissioned")
        try:
            self.correlator.send_command(device_id, "shutdown")
        except DispatchFailure as e:
            logger.warning("[GATEWAY] Shutdown command for %s failed: %s", device_id, e)

        self.presence.discard(device_id)
        self.engine.forget(device_id)
        self._repository.update_device_state(device_id, status=DeviceStatus.DECOMMISSIONED)
        self.directory.put(replace(device, status=DeviceStatus.DECOMMISSIONED))
        logger.info("[GATEWAY] Removed device %s", device_id)

    def device_configuration(self, device: Device) -> dict[str, Any]:
        return {
            "heartbeatInterval": self._config.heartbeat_interval_ms,
            "metricsInterval": self._config.metrics_interval_ms,
            "reconnectAttempts": self._mqtt_config.max_reconnect_attempts,
            "timezone": self._config.device_timezone,
            "features": list(device.features),
            "thresholds": self.engine.thresholds.as_device_config(),
        }

    # ------------------------------------------------------------------
    # Commands / queries
    # ------------------------------------------------------------------

    def send_command(self, device_id: str, command: str, params: Optional[dict[str, Any]] = None,
                     timeout_ms: Optional[int] = None, issuer_id: Optional[str] = None) -> str:
        return self.correlator.send_command(device_id, command, params, timeout_ms=timeout_ms, issuer_id=issuer_id)

    def bulk_command(self, device_ids: list[str], command: str, params: Optional[dict[str, Any]] = None,
                     issuer_id: Optional[str] = None) -> list[str]:
        return self.correlator.bulk_command(device_ids, command, params, issuer_id=issuer_id)

    def get_snapshot(self, device_id: str) -> Optional[TelemetrySnapshot]:
        return self.engine.get_snapshot(device_id)

    def connected_devices(self) -> dict[str, datetime]:
        return self.presence.snapshot()

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def stats(self) -> dict:
        return {
            "broker": self.connection.stats,
            "router": self.router.stats,
            "writer": self.writer.metrics,
            "pendingCommands": self.correlator.pending_count,
            "connectedDevices": len(self.presence),
            "systemComponents": self.handlers.system_components(),
        }

    def health_check(self) -> dict:
        broker = self.connection.health_check()
        return {
            "healthy": self._started and broker["healthy"] and self.writer.is_running,
            "running": self._started,
            "broker": broker,
            "fatalError": str(self._fatal_error) if self._fatal_error else None,
            "lastMessageAgeSeconds": self.router.last_message_age(),
            "persistence": self.writer.metrics,
        }
