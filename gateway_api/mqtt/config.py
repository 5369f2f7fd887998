"""Configuración de la conexión MQTT."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from typing import Optional

from .topics import backend_status_topic


@dataclass(frozen=True)
class MQTTConfig:
    """Parámetros del broker y de la política de reconexión."""
    broker_host: str = "localhost"
    broker_port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: str = field(default_factory=lambda: f"device-gateway-{int(time.time() * 1000)}")
    keepalive: int = 60
    topic_root: str = "skyn3t"
    qos: int = 1
    max_reconnect_attempts: int = 10
    reconnect_min_delay: int = 1
    reconnect_max_delay: int = 30
    version: str = "1.0.0"

    @property
    def status_topic(self) -> str:
        return backend_status_topic(self.topic_root)

    @classmethod
    def from_env(cls) -> "MQTTConfig":
        client_prefix = os.getenv("MQTT_CLIENT_ID", "device-gateway")
        return cls(
            broker_host=os.getenv("MQTT_BROKER_HOST", "localhost"),
            broker_port=int(os.getenv("MQTT_BROKER_PORT", "1883")),
            username=os.getenv("MQTT_USERNAME") or None,
            password=os.getenv("MQTT_PASSWORD") or None,
            client_id=f"{client_prefix}-{int(time.time() * 1000)}",
            keepalive=int(os.getenv("MQTT_KEEPALIVE", "60")),
            topic_root=os.getenv("MQTT_TOPIC_ROOT", "skyn3t"),
            qos=int(os.getenv("MQTT_QOS", "1")),
            max_reconnect_attempts=int(os.getenv("MQTT_MAX_RECONNECT_ATTEMPTS", "10")),
            reconnect_min_delay=int(os.getenv("MQTT_RECONNECT_MIN_DELAY", "1")),
            reconnect_max_delay=int(os.getenv("MQTT_RECONNECT_MAX_DELAY", "30")),
            version=os.getenv("GATEWAY_VERSION", "1.0.0"),
        )
