"""Topic router.

Clasifica cada mensaje entrante por su topic y lo despacha al handler de su
categoría (devices, access-points, alerts, system).

Reglas:
- Topic con prefijo incorrecto o segmentos insuficientes → warning y descarte
- Categoría desconocida → warning y descarte
- Payload JSON inválido → warning y descarte
- Excepción en un handler → se registra; el siguiente mensaje se procesa igual

route() nunca lanza excepciones.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from ..errors import MalformedMessage
from ..metrics import MQTT_MESSAGES_ROUTED
from .router_stats import RouterStats
from .topics import TopicInfo, parse_topic
from .validators import decode_payload

logger = logging.getLogger(__name__)

MessageHandler = Callable[[TopicInfo, dict[str, Any]], None]


class TopicRouter:
    """Despacha mensajes MQTT por categoría de topic."""

    def __init__(self, topic_root: str):
        self._topic_root = topic_root
        self._handlers: dict[str, MessageHandler] = {}
        self._stats = RouterStats()

    def register(self, category: str, handler: MessageHandler) -> None:
        self._handlers[category] = handler

    @property
    def categories(self) -> list[str]:
        return sorted(self._handlers)

    def route(self, topic: str, raw_payload: bytes) -> None:
        self._stats.incr("received")
        self._stats.last_message_at = time.time()

        info = parse_topic(topic, self._topic_root)
        if info is None:
            logger.warning("[ROUTER] Invalid topic format: %s", topic)
            self._stats.incr("unroutable")
            MQTT_MESSAGES_ROUTED.labels(category="invalid", status="unknown").inc()
            return

        handler = self._handlers.get(info.category)
        if handler is None:
            logger.warning("[ROUTER] Unknown category: %s (topic=%s)", info.category, topic)
            self._stats.incr("unroutable")
            MQTT_MESSAGES_ROUTED.labels(category="unknown", status="unknown").inc()
            return

        try:
            payload = decode_payload(topic, raw_payload)
            logger.debug("[ROUTER] Message on %s: %s", topic, payload)
            handler(info, payload)
        except MalformedMessage as e:
            logger.warning("[ROUTER] %s", e)
            self._stats.incr("malformed")
            MQTT_MESSAGES_ROUTED.labels(category=info.category, status="malformed").inc()
            return
        except Exception as e:
            logger.exception("[ROUTER] Error processing message from topic %s: %s", topic, e)
            self._stats.incr("failed")
            MQTT_MESSAGES_ROUTED.labels(category=info.category, status="error").inc()
            return

        self._stats.incr("handled")
        MQTT_MESSAGES_ROUTED.labels(category=info.category, status="handled").inc()

        if self._stats.handled % 100 == 0:
            logger.info("[ROUTER] %s", self._stats)

    @property
    def stats(self) -> dict:
        return {**self._stats.to_dict(), "categories": self.categories}

    def last_message_age(self) -> Optional[float]:
        if not self._stats.last_message_at:
            return None
        return time.time() - self._stats.last_message_at
