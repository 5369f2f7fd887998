"""Configuración del gateway (correlación de comandos y persistencia)."""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_COMMAND_TIMEOUT_MS = 30000


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "on")


@dataclass(frozen=True)
class GatewayConfig:
    default_timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS
    reconcile_on_start: bool = True
    refresh_status_on_connect: bool = True
    writer_workers: int = 2
    writer_queue_size: int = 1000
    heartbeat_interval_ms: int = 30000
    metrics_interval_ms: int = 60000
    device_timezone: str = "America/Santiago"
    device_cache_ttl_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        return cls(
            default_timeout_ms=int(os.getenv("GATEWAY_COMMAND_TIMEOUT_MS", str(DEFAULT_COMMAND_TIMEOUT_MS))),
            reconcile_on_start=_flag("GATEWAY_RECONCILE_ON_START", "true"),
            refresh_status_on_connect=_flag("GATEWAY_REFRESH_STATUS_ON_CONNECT", "true"),
            writer_workers=int(os.getenv("GATEWAY_WRITER_WORKERS", "2")),
            writer_queue_size=int(os.getenv("GATEWAY_WRITER_QUEUE_SIZE", "1000")),
            heartbeat_interval_ms=int(os.getenv("GATEWAY_DEVICE_HEARTBEAT_MS", "30000")),
            metrics_interval_ms=int(os.getenv("GATEWAY_DEVICE_METRICS_MS", "60000")),
            device_timezone=os.getenv("GATEWAY_DEVICE_TIMEZONE", "America/Santiago"),
            device_cache_ttl_seconds=float(os.getenv("GATEWAY_DEVICE_CACHE_TTL_S", "30")),
        )
