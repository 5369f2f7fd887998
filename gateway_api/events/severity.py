"""Severidad de alertas de seguridad por motivo de denegación de acceso."""

from __future__ import annotations

from typing import Optional

CRITICAL_REASONS = frozenset({"unauthorized_access", "forced_entry", "tampering"})
HIGH_REASONS = frozenset({"invalid_credentials", "expired_access", "blacklisted_user"})
MEDIUM_REASONS = frozenset({"device_error", "network_issue"})


def classify_denial(reason: Optional[str]) -> str:
    """critical / high / medium / low. Motivo desconocido o ausente → low."""
    if reason in CRITICAL_REASONS:
        return "critical"
    if reason in HIGH_REASONS:
        return "high"
    if reason in MEDIUM_REASONS:
        return "medium"
    return "low"
