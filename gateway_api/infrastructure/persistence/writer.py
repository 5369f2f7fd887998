"""Persistence writer: escrituras fire-and-forget fuera del hot path MQTT.

El callback de paho (o el timer de un comando) encola la escritura y retorna
de inmediato. Workers en background ejecutan las escrituras contra la BD.

- Una cola acotada por worker; la clave (device id, correlation id) decide el
  worker, así las escrituras de una misma clave se aplican en orden.
- Cola llena → la escritura se descarta con warning (la durabilidad es
  best-effort, la latencia del pipeline no).
- Un fallo de BD se registra y nunca se propaga al llamador.
"""

from __future__ import annotations

import logging
import queue
import threading
import zlib
from typing import Any, Callable, Optional

from ...metrics import PERSISTENCE_WRITES

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_NUM_WORKERS = 2


class PersistenceWriter:
    """Colas + threads para escrituras de persistencia."""

    def __init__(
        self,
        num_workers: int = DEFAULT_NUM_WORKERS,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        if num_workers < 1:
            raise ValueError("num_workers must be >= 1")
        self._queues: list[queue.Queue] = [
            queue.Queue(maxsize=max_queue_size) for _ in range(num_workers)
        ]
        self._stop_event = threading.Event()
        self._workers: list[threading.Thread] = []

        # Metrics
        self._submitted = 0
        self._dropped = 0
        self._completed = 0
        self._errors = 0
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        self._stop_event.clear()
        for i, q in enumerate(self._queues):
            t = threading.Thread(
                target=self._worker_loop,
                args=(i, q),
                daemon=True,
                name=f"persist-worker-{i}",
            )
            t.start()
            self._workers.append(t)
        logger.info(
            "[PERSIST] Started workers=%d queue_max=%d",
            len(self._queues), self._queues[0].maxsize,
        )

    def stop(self, drain: bool = True) -> None:
        """Detiene los workers. Con drain=True primero vacía las colas."""
        if drain and self._workers:
            self.flush()
        self._stop_event.set()
        for t in self._workers:
            t.join(timeout=5.0)
        self._workers.clear()
        logger.info("[PERSIST] Stopped. %s", self.metrics)

    def flush(self) -> None:
        """Bloquea hasta que todas las escrituras encoladas terminen."""
        if not self._workers:
            return
        for q in self._queues:
            q.join()

    def submit(self, key: str, func: Callable[..., Any], *args: Any, description: str = "", **kwargs: Any) -> bool:
        """Encola func(*args, **kwargs). Retorna False si la cola está llena."""
        q = self._queues[self._shard(key)]
        try:
            q.put_nowait((description or getattr(func, "__name__", "write"), key, func, args, kwargs))
        except queue.Full:
            with self._lock:
                self._dropped += 1
            PERSISTENCE_WRITES.labels(status="dropped").inc()
            logger.warning(
                "[PERSIST] Queue full, dropped %s key=%s",
                description or getattr(func, "__name__", "write"), key,
            )
            return False
        with self._lock:
            self._submitted += 1
        return True

    def _shard(self, key: Optional[str]) -> int:
        return zlib.crc32(str(key).encode("utf-8")) % len(self._queues)

    def _worker_loop(self, worker_id: int, q: queue.Queue) -> None:
        while not self._stop_event.is_set():
            try:
                description, key, func, args, kwargs = q.get(timeout=0.5)
            except queue.Empty:
                continue

            try:
                func(*args, **kwargs)
                with self._lock:
                    self._completed += 1
                PERSISTENCE_WRITES.labels(status="ok").inc()
            except Exception as e:
                with self._lock:
                    self._errors += 1
                PERSISTENCE_WRITES.labels(status="error").inc()
                logger.error(
                    "[PERSIST] Worker %d %s failed key=%s: %s",
                    worker_id, description, key, e,
                )
            finally:
                q.task_done()

    @property
    def metrics(self) -> dict:
        with self._lock:
            return {
                "queue_depth": sum(q.qsize() for q in self._queues),
                "workers": len(self._queues),
                "submitted": self._submitted,
                "dropped": self._dropped,
                "completed": self._completed,
                "errors": self._errors,
            }
