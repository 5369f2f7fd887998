"""Dispositivos vistos recientemente (en memoria).

Independiente del Device.status persistido: solo registra cuándo se vio
cada dispositivo por última vez en el bus.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional


class ConnectedDeviceSet:
    def __init__(self):
        self._seen: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def touch(self, device_id: str, when: datetime) -> None:
        with self._lock:
            self._seen[device_id] = when

    def discard(self, device_id: str) -> None:
        with self._lock:
            self._seen.pop(device_id, None)

    def last_seen(self, device_id: str) -> Optional[datetime]:
        with self._lock:
            return self._seen.get(device_id)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()

    def snapshot(self) -> dict[str, datetime]:
        with self._lock:
            return dict(self._seen)

    def __contains__(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
