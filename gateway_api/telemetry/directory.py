"""Directorio de dispositivos con cache (lookup en el hot path MQTT).

Cada mensaje de un dispositivo se valida contra el registro persistido antes
de tocar snapshots, presencia o alertas:
- id desconocido → se descarta
- tenant del topic distinto al tenant registrado → se descarta
- decommissioned → el caller decide (las respuestas aún liquidan comandos)

Los lookups (positivos y negativos) se cachean con TTL para que un
dispositivo que reporta cada pocos segundos no consulte la BD cada vez.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from ..core.domain import Device, DeviceRepository

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30.0
DEFAULT_MAX_ENTRIES = 10000


class DeviceDirectory:
    def __init__(
        self,
        repository: DeviceRepository,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self._repository = repository
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._monotonic = monotonic
        # device_id -> (expira_en, Device o None si no existe)
        self._entries: dict[str, tuple[float, Optional[Device]]] = {}
        self._lock = threading.Lock()

    def lookup(self, device_id: str) -> Optional[Device]:
        """Device registrado (cacheado), o None si no existe."""
        now = self._monotonic()
        with self._lock:
            entry = self._entries.get(device_id)
            if entry is not None and entry[0] > now:
                return entry[1]

        try:
            device = self._repository.get_device(device_id)
        except Exception as e:
            # Sin cachear: el siguiente mensaje reintenta
            logger.error("[DIRECTORY] Lookup failed for %s: %s", device_id, e)
            return None

        with self._lock:
            if len(self._entries) >= self._max_entries:
                self._evict(now)
            self._entries[device_id] = (now + self._ttl, device)
        if device is None:
            logger.warning("[DIRECTORY] Unknown device %s", device_id)
        return device

    def resolve(self, tenant_id: str, device_id: str) -> Optional[Device]:
        """Device si existe y pertenece al tenant del topic; None en otro caso."""
        device = self.lookup(device_id)
        if device is None:
            return None
        if device.tenant_id != tenant_id:
            logger.warning(
                "[DIRECTORY] Tenant mismatch for %s: topic=%s registered=%s",
                device_id, tenant_id, device.tenant_id,
            )
            return None
        return device

    def put(self, device: Device) -> None:
        """Reemplaza la entrada (registro, baja) sin esperar al TTL."""
        with self._lock:
            self._entries[device.id] = (self._monotonic() + self._ttl, device)

    def invalidate(self, device_id: str) -> None:
        with self._lock:
            self._entries.pop(device_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict(self, now: float) -> None:
        expired = [k for k, (expires, _) in self._entries.items() if expires <= now]
        for key in expired:
            del self._entries[key]
        # Sigue lleno: fuera la entrada más antigua (orden de inserción)
        while len(self._entries) >= self._max_entries:
            self._entries.pop(next(iter(self._entries)))
