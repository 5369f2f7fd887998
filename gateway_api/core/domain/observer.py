"""Interfaces de los observadores en tiempo real.

Cada evento se emite con alcance de tenant; nunca existe un broadcast
entre comunidades.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class RealtimeObserver(ABC):
    """Colaborador que entrega eventos a los suscriptores de un tenant."""

    @abstractmethod
    def emit_to_tenant(self, tenant_id: str, event_name: str, payload: dict[str, Any]) -> None:
        pass


class LoggingObserver(RealtimeObserver):
    """Observer para modo headless: solo registra los eventos."""

    def emit_to_tenant(self, tenant_id: str, event_name: str, payload: dict[str, Any]) -> None:
        logger.info("[REALTIME] tenant=%s event=%s payload=%s", tenant_id, event_name, payload)
