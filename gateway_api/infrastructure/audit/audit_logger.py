"""Audit Logger - Registro de auditoría de eventos de dispositivos.

Registra accesos, alertas de dispositivo y alertas de umbral:
- Quién: user_id (si el evento lo trae)
- Qué: event_type, details
- Dónde: tenant_id, device_id
- Cuándo: created_at
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import insert
from sqlalchemy.engine import Engine

from ..persistence.tables import audit_logs

logger = logging.getLogger(__name__)


class AuditLogger:
    """Logger de auditoría.

    Escribe a la tabla audit_logs.
    Si la BD no está disponible o la escritura falla, escribe a logger
    estructurado (fallback).
    """

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine
        self._fallback_logger = logging.getLogger("audit")

    def log_event(
        self,
        event_type: str,
        tenant_id: Optional[str],
        details: dict[str, Any],
        user_id: Optional[str] = None,
        source: str = "MQTT Device",
    ) -> None:
        """Registra un evento en el audit log.

        Args:
            event_type: Tipo de evento (access_attempt, device_alert, threshold_alert)
            tenant_id: Comunidad a la que pertenece el dispositivo
            details: Datos del evento (device_id, severity, etc.)
            user_id: Usuario involucrado (opcional)
            source: Origen del evento
        """
        now = datetime.now(timezone.utc)

        if self._engine is not None:
            try:
                with self._engine.begin() as conn:
                    conn.execute(
                        insert(audit_logs).values(
                            event_type=event_type,
                            tenant_id=tenant_id,
                            user_id=user_id,
                            details=details,
                            source=source,
                            created_at=now,
                        )
                    )
                return
            except Exception as e:
                logger.warning("Failed to write to audit log table: %s", e)
                # Continuar con fallback

        # Fallback: escribir a logger estructurado
        self._fallback_logger.info(
            "AUDIT",
            extra={
                "event_type": event_type,
                "tenant_id": tenant_id,
                "user_id": user_id,
                "details": details,
                "source": source,
                "created_at": now.isoformat(),
            },
        )
