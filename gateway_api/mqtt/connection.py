"""Broker connection manager.

Dueño de la única conexión lógica al broker MQTT (paho-mqtt 2.x):

- connect(): conexión asíncrona + loop de red en thread propio
- En cada conexión: re-suscribe los patrones wildcard, publica el liveness
  "online" (retained) y notifica a los listeners (el gateway pide status a
  todos los dispositivos para reconstruir estado; el bus no tiene replay)
- Reconexión automática con backoff de paho, acotada por
  max_reconnect_attempts; al superarla la conexión se cierra para siempre y
  los listeners reciben on_error(BrokerUnavailable)
- publish()/subscribe() sobre una conexión caída fallan de inmediato
- disconnect(): publica liveness "offline" (retained) antes de soltar la
  conexión; el last will cubre las caídas no controladas
"""

from __future__ import annotations

import logging
import os
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import orjson
import paho.mqtt.client as mqtt

from ..errors import BrokerUnavailable, DispatchFailure
from ..metrics import BROKER_CONNECTED, BROKER_RECONNECT_ATTEMPTS
from .config import MQTTConfig
from .topics import subscription_patterns

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"      # se agotaron los reintentos
    STOPPED = "stopped"    # desconexión ordenada


class ConnectionListener:
    """Eventos de ciclo de vida de la conexión. Todos los métodos son opcionales."""

    def on_connected(self) -> None:
        pass

    def on_disconnected(self, reason: str) -> None:
        pass

    def on_reconnecting(self, attempt: int, max_attempts: int) -> None:
        pass

    def on_error(self, error: BrokerUnavailable) -> None:
        pass


def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1


def create_paho_client(config: MQTTConfig) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=config.client_id,
        protocol=mqtt.MQTTv311,
    )


class BrokerConnectionManager:
    """Conexión MQTT con reconexión acotada y liveness retained."""

    def __init__(
        self,
        config: MQTTConfig,
        on_message: Callable[[str, bytes], None],
        client_factory: Callable[[MQTTConfig], mqtt.Client] = create_paho_client,
    ):
        self._config = config
        self._on_message_cb = on_message
        self._client_factory = client_factory
        self._client: Optional[mqtt.Client] = None
        self._patterns: list[str] = subscription_patterns(config.topic_root)
        self._listeners: list[ConnectionListener] = []

        self._state = ConnectionState.IDLE
        self._lock = threading.Lock()
        self._reconnect_attempts = 0
        self._total_reconnects = 0
        self._connected_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def add_listener(self, listener: ConnectionListener) -> None:
        self._listeners.append(listener)

    def connect(self) -> "BrokerConnectionManager":
        """Inicia la conexión. No bloquea: el resultado llega por los listeners."""
        with self._lock:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.RECONNECTING):
                logger.warning("[MQTT] Already started (state=%s)", self._state.value)
                return self
            self._state = ConnectionState.CONNECTING
            self._reconnect_attempts = 0

        client = self._client_factory(self._config)
        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe

        if self._config.username and self._config.password:
            client.username_pw_set(self._config.username, self._config.password)

        client.will_set(
            self._config.status_topic,
            self._liveness_payload("offline"),
            qos=1,
            retain=True,
        )
        client.reconnect_delay_set(
            min_delay=self._config.reconnect_min_delay,
            max_delay=self._config.reconnect_max_delay,
        )
        self._client = client

        logger.info(
            "[MQTT] Connecting to %s:%d client_id=%s user=%s",
            self._config.broker_host,
            self._config.broker_port,
            self._config.client_id,
            "<set>" if self._config.username else "<none>",
        )
        client.connect_async(self._config.broker_host, self._config.broker_port, keepalive=self._config.keepalive)
        client.loop_start()
        return self

    def disconnect(self) -> None:
        """Desconexión ordenada: liveness offline y luego liberar la conexión."""
        with self._lock:
            was_connected = self._state == ConnectionState.CONNECTED
            if self._state in (ConnectionState.STOPPED, ConnectionState.IDLE):
                return
            self._state = ConnectionState.STOPPED

        client = self._client
        if client is None:
            return

        if was_connected:
            try:
                info = client.publish(
                    self._config.status_topic,
                    self._liveness_payload("offline"),
                    qos=1,
                    retain=True,
                )
                info.wait_for_publish(timeout=2.0)
            except Exception as e:
                logger.warning("[MQTT] Could not publish offline status: %s", e)

        try:
            client.disconnect()
            client.loop_stop()
        except Exception as e:
            logger.warning("[MQTT] Error stopping: %s", e)

        BROKER_CONNECTED.set(0)
        logger.info("[MQTT] Disconnected. reconnects=%d", self._total_reconnects)

    # ------------------------------------------------------------------
    # Publish / subscribe
    # ------------------------------------------------------------------

    def publish(self, topic: str, payload: Any, qos: Optional[int] = None, retain: bool = False) -> None:
        """Publica un mensaje. Falla de inmediato si no hay conexión.

        Raises:
            BrokerUnavailable: la conexión no está establecida
            DispatchFailure: paho rechazó el publish
        """
        client = self._require_connected()
        data = payload if isinstance(payload, (bytes, bytearray)) else orjson.dumps(payload)
        info = client.publish(topic, data, qos=self._config.qos if qos is None else qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise DispatchFailure(None, f"publish to {topic} failed rc={info.rc}")

    def subscribe(self, pattern: str, qos: Optional[int] = None) -> None:
        client = self._require_connected()
        result, _mid = client.subscribe(pattern, qos=self._config.qos if qos is None else qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise DispatchFailure(None, f"subscribe to {pattern} failed rc={result}")
        if pattern not in self._patterns:
            self._patterns.append(pattern)

    def _require_connected(self) -> mqtt.Client:
        with self._lock:
            state = self._state
        if state != ConnectionState.CONNECTED or self._client is None:
            raise BrokerUnavailable(f"MQTT broker not connected (state={state.value})")
        return self._client

    # ------------------------------------------------------------------
    # paho callbacks (thread de red de paho)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        rc = _rc_int(reason_code)
        if rc != 0:
            logger.error("[MQTT] Connection refused rc=%s", reason_code)
            return

        with self._lock:
            if self._state in (ConnectionState.CLOSED, ConnectionState.STOPPED):
                return
            self._state = ConnectionState.CONNECTED
            self._reconnect_attempts = 0
            self._connected_at = time.time()

        BROKER_CONNECTED.set(1)
        logger.info("[MQTT] Connected to broker %s:%d", self._config.broker_host, self._config.broker_port)

        for pattern in self._patterns:
            result, mid = client.subscribe(pattern, qos=self._config.qos)
            if result != mqtt.MQTT_ERR_SUCCESS:
                logger.error("[MQTT] Failed to subscribe to %s rc=%s", pattern, result)
            else:
                logger.debug("[MQTT] Subscribed to %s mid=%s", pattern, mid)

        client.publish(
            self._config.status_topic,
            self._liveness_payload("online"),
            qos=1,
            retain=True,
        )

        for listener in list(self._listeners):
            try:
                listener.on_connected()
            except Exception:
                logger.exception("[MQTT] on_connected listener failed")

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        if any(_rc_int(rc) >= 0x80 for rc in reason_code_list):
            logger.warning("[MQTT] Subscription mid=%s rejected by broker ACL", mid)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        with self._lock:
            state = self._state
        BROKER_CONNECTED.set(0)

        if state in (ConnectionState.STOPPED, ConnectionState.CLOSED):
            return

        logger.warning("[MQTT] Connection closed rc=%s", reason_code)
        for listener in list(self._listeners):
            try:
                listener.on_disconnected(str(reason_code))
            except Exception:
                logger.exception("[MQTT] on_disconnected listener failed")

        self._schedule_reconnect()

    def _on_connect_fail(self, client, userdata):
        with self._lock:
            state = self._state
        if state in (ConnectionState.STOPPED, ConnectionState.CLOSED):
            return
        logger.warning("[MQTT] Connection attempt to %s:%d failed", self._config.broker_host, self._config.broker_port)
        self._schedule_reconnect()

    def _on_message(self, client, userdata, msg):
        try:
            self._on_message_cb(msg.topic, msg.payload)
        except Exception:
            # El router no debería lanzar; protegemos el thread de paho igual
            logger.exception("[MQTT] Unhandled error for topic %s", msg.topic)

    # ------------------------------------------------------------------
    # Reconnection policy
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        """Cuenta el próximo intento de paho; al superar el máximo cierra todo."""
        max_attempts = self._config.max_reconnect_attempts
        with self._lock:
            self._reconnect_attempts += 1
            attempt = self._reconnect_attempts
            give_up = attempt > max_attempts
            self._state = ConnectionState.CLOSED if give_up else ConnectionState.RECONNECTING
            if not give_up:
                self._total_reconnects += 1

        if give_up:
            self._give_up(max_attempts)
            return

        BROKER_RECONNECT_ATTEMPTS.inc()
        logger.info("[MQTT] Reconnecting... Attempt %d/%d", attempt, max_attempts)
        for listener in list(self._listeners):
            try:
                listener.on_reconnecting(attempt, max_attempts)
            except Exception:
                logger.exception("[MQTT] on_reconnecting listener failed")

    def _give_up(self, max_attempts: int) -> None:
        logger.error("[MQTT] Max reconnection attempts reached (%d); closing connection", max_attempts)
        client = self._client
        if client is not None:
            try:
                client.disconnect()
                client.loop_stop()
            except Exception as e:
                logger.warning("[MQTT] Error tearing down client: %s", e)

        error = BrokerUnavailable(f"MQTT broker unreachable after {max_attempts} reconnection attempts")
        for listener in list(self._listeners):
            try:
                listener.on_error(error)
            except Exception:
                logger.exception("[MQTT] on_error listener failed")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _liveness_payload(self, status: str) -> bytes:
        return orjson.dumps({
            "status": status,
            "timestamp": datetime.now(timezone.utc),
            "version": self._config.version,
            "pid": os.getpid(),
        })

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        with self._lock:
            return self._reconnect_attempts

    @property
    def patterns(self) -> list[str]:
        return list(self._patterns)

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "state": self._state.value,
                "broker": f"{self._config.broker_host}:{self._config.broker_port}",
                "client_id": self._config.client_id,
                "reconnect_attempts": self._reconnect_attempts,
                "total_reconnects": self._total_reconnects,
                "connected_since": self._connected_at,
                "subscriptions": len(self._patterns),
            }

    def health_check(self) -> dict:
        state = self.state
        return {
            "healthy": state == ConnectionState.CONNECTED,
            "state": state.value,
            "fatal": state == ConnectionState.CLOSED,
        }
