"""Capa MQTT del gateway.

- connection.py: BrokerConnectionManager (paho, reconexión acotada, liveness)
- topics.py: esquema de topics y patrones de suscripción
- router.py: TopicRouter, despacho por categoría
- validators.py: decodificación orjson + modelos pydantic de payloads
"""

from .config import MQTTConfig
from .connection import BrokerConnectionManager, ConnectionListener, ConnectionState
from .router import TopicRouter
from .topics import TopicInfo, command_topic, parse_topic, subscription_patterns

__all__ = [
    "MQTTConfig",
    "BrokerConnectionManager",
    "ConnectionListener",
    "ConnectionState",
    "TopicRouter",
    "TopicInfo",
    "command_topic",
    "parse_topic",
    "subscription_patterns",
]
