"""Command correlator.

Cada comando saliente recibe un correlation id y queda en el mapa de
pendientes con su propio timer. Lo liquida exactamente una vez el primero
que llegue de:

- la respuesta del dispositivo (completed / failed)
- el timer (timeout)

Ambos caminos pasan por `_take()`, que saca la entrada del mapa bajo lock
(compare-and-remove). Quien no la encuentra, no liquida: una respuesta
tardía se descarta. El registro durable además se cierra con
`WHERE status = 'pending'`.

Los callers reciben el correlation id de inmediato; el resultado llega por
los settlement listeners.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Protocol

from ..core.domain import (
    CommandRecord,
    CommandSettlement,
    CommandStatus,
    DeviceRepository,
    PendingCommand,
    TimerHandle,
)
from ..errors import CommandTimeout, DeviceNotFound, DispatchFailure
from ..infrastructure.persistence.writer import PersistenceWriter
from ..metrics import (
    COMMAND_LATENCY,
    COMMANDS_DISPATCHED,
    COMMANDS_SETTLED,
    LATE_RESPONSES,
    PENDING_COMMANDS,
)
from ..mqtt.topics import command_topic
from ..mqtt.validators import CommandResponsePayload

logger = logging.getLogger(__name__)

TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]
SettlementListener = Callable[[CommandSettlement], None]


class CommandPublisher(Protocol):
    def publish(self, topic: str, payload: Any, qos: Optional[int] = None, retain: bool = False) -> None: ...


def thread_timer(seconds: float, callback: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(seconds, callback)
    timer.daemon = True
    return timer


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_correlation_id() -> str:
    """cmd_{epoch_ms}_{sufijo aleatorio}: único aun con ráfagas en el mismo ms."""
    return f"cmd_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class CommandCorrelator:
    """Despacho de comandos y correlación de respuestas con timeout."""

    def __init__(
        self,
        repository: DeviceRepository,
        publisher: CommandPublisher,
        writer: PersistenceWriter,
        topic_root: str,
        default_timeout_ms: int = 30000,
        timer_factory: TimerFactory = thread_timer,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._publisher = publisher
        self._writer = writer
        self._topic_root = topic_root
        self._default_timeout_ms = default_timeout_ms
        self._timer_factory = timer_factory
        self._clock = clock

        self._pending: dict[str, PendingCommand] = {}
        self._lock = threading.Lock()
        self._listeners: list[SettlementListener] = []

    def add_settlement_listener(self, listener: SettlementListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def send_command(
        self,
        device_id: str,
        command: str,
        params: Optional[dict[str, Any]] = None,
        timeout_ms: Optional[int] = None,
        issuer_id: Optional[str] = None,
    ) -> str:
        """Publica un comando y retorna su correlation id.

        Raises:
            DeviceNotFound: el dispositivo no existe o está dado de baja
                (no se toca la red)
            DispatchFailure: el publish falló; el registro queda `failed`
        """
        device = self._repository.get_device(device_id)
        if device is None:
            raise DeviceNotFound(device_id)
        if device.is_decommissioned:
            raise DeviceNotFound(device_id, reason="decommissioned")

        timeout_ms = timeout_ms or self._default_timeout_ms
        issued_at = self._clock()
        pending = PendingCommand(
            correlation_id=new_correlation_id(),
            device_id=device_id,
            tenant_id=device.tenant_id,
            command=command,
            parameters=dict(params or {}),
            issued_at=issued_at,
            timeout_at=issued_at + timedelta(milliseconds=timeout_ms),
            timeout_ms=timeout_ms,
            issuer_id=issuer_id,
        )
        cid = pending.correlation_id
        pending.timer = self._timer_factory(timeout_ms / 1000.0, lambda: self._on_timeout(cid))

        with self._lock:
            self._pending[cid] = pending
            PENDING_COMMANDS.set(len(self._pending))
        pending.timer.start()

        self._writer.submit(
            cid,
            self._repository.create_command_record,
            CommandRecord.from_pending(pending),
            description="create_command_record",
        )

        topic = command_topic(self._topic_root, device.tenant_id, device_id)
        try:
            self._publisher.publish(topic, pending.to_payload())
        except Exception as e:
            self._abort(pending, e)
            if isinstance(e, DispatchFailure):
                e.device_id = device_id
                raise
            raise DispatchFailure(device_id, f"publish to {topic} failed: {e}") from e

        COMMANDS_DISPATCHED.labels(command=command).inc()
        logger.info(
            "[CMD] Sent %s to device=%s tenant=%s cid=%s timeout=%dms",
            command, device_id, device.tenant_id, cid, timeout_ms,
        )
        return cid

    def bulk_command(
        self,
        device_ids: Iterable[str],
        command: str,
        params: Optional[dict[str, Any]] = None,
        issuer_id: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> list[str]:
        """Despacho best-effort: un dispositivo que falla no frena al resto."""
        device_ids = list(device_ids)
        correlation_ids: list[str] = []
        for device_id in device_ids:
            try:
                correlation_ids.append(
                    self.send_command(device_id, command, params, timeout_ms=timeout_ms, issuer_id=issuer_id)
                )
            except (DeviceNotFound, DispatchFailure) as e:
                logger.error("[CMD] Bulk %s failed for device %s: %s", command, device_id, e)

        logger.info(
            "[CMD] Bulk %s sent to %d/%d devices",
            command, len(correlation_ids), len(device_ids),
        )
        return correlation_ids

    def _abort(self, pending: PendingCommand, error: Exception) -> None:
        # Publish fallido: se libera el timer y el registro queda failed.
        # No hay settlement: el caller recibe la excepción directamente.
        if self._take(pending.correlation_id) is None:
            return
        self._writer.submit(
            pending.correlation_id,
            self._repository.finalize_command_record,
            pending.correlation_id,
            CommandStatus.FAILED,
            error=f"dispatch failed: {error}",
            completed_at=self._clock(),
            description="finalize_command_record",
        )

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def handle_response(self, device_id: str, response: CommandResponsePayload) -> bool:
        """Liquida el comando de una respuesta. Retorna False si se descartó."""
        cid = response.correlation_id
        pending = self._take(cid, device_id=device_id)
        if pending is None:
            LATE_RESPONSES.inc()
            logger.warning("[CMD] Received response for unknown command: %s (device=%s)", cid, device_id)
            return False

        outcome = response.normalized_outcome
        error = response.error
        if outcome is None:
            logger.warning("[CMD] Unrecognized outcome %r for %s; settling as failed", response.outcome, cid)
            outcome = CommandStatus.FAILED.value
            error = error or f"unrecognized outcome: {response.outcome}"

        self._finalize(pending, CommandStatus(outcome), result=response.result, error=error)
        return True

    def _on_timeout(self, correlation_id: str) -> None:
        pending = self._take(correlation_id)
        if pending is None:
            return
        self._finalize(
            pending,
            CommandStatus.TIMEOUT,
            error=str(CommandTimeout(correlation_id, pending.timeout_ms)),
        )

    def _take(self, correlation_id: str, device_id: Optional[str] = None) -> Optional[PendingCommand]:
        """Compare-and-remove sobre el mapa. Único punto de entrada a la liquidación."""
        with self._lock:
            pending = self._pending.get(correlation_id)
            if pending is None:
                return None
            if device_id is not None and pending.device_id != device_id:
                logger.warning(
                    "[CMD] Response for %s came from %s, expected %s; dropped",
                    correlation_id, device_id, pending.device_id,
                )
                return None
            del self._pending[correlation_id]
            PENDING_COMMANDS.set(len(self._pending))

        if pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _finalize(
        self,
        pending: PendingCommand,
        outcome: CommandStatus,
        result: Optional[Any] = None,
        error: Optional[str] = None,
    ) -> None:
        settlement = CommandSettlement(
            correlation_id=pending.correlation_id,
            device_id=pending.device_id,
            tenant_id=pending.tenant_id,
            command=pending.command,
            outcome=outcome,
            issued_at=pending.issued_at,
            settled_at=self._clock(),
            issuer_id=pending.issuer_id,
            result=result,
            error=error,
        )

        self._writer.submit(
            pending.correlation_id,
            self._repository.finalize_command_record,
            pending.correlation_id,
            outcome,
            result=result,
            error=error,
            completed_at=settlement.settled_at,
            description="finalize_command_record",
        )

        COMMANDS_SETTLED.labels(outcome=outcome.value).inc()
        if outcome == CommandStatus.TIMEOUT:
            logger.warning(
                "[CMD] Command %s timed out device=%s command=%s",
                pending.correlation_id, pending.device_id, pending.command,
            )
        else:
            COMMAND_LATENCY.observe(max(settlement.latency_ms, 0.0) / 1000.0)
            logger.info(
                "[CMD] Command %s %s device=%s latency=%.0fms",
                pending.correlation_id, outcome.value, pending.device_id, settlement.latency_ms,
            )

        for listener in list(self._listeners):
            try:
                listener(settlement)
            except Exception:
                logger.exception("[CMD] Settlement listener failed for %s", pending.correlation_id)

    # ------------------------------------------------------------------
    # Lifecycle / introspection
    # ------------------------------------------------------------------

    def shutdown(self) -> int:
        """Cancela todos los timers y descarta los pendientes sin liquidarlos."""
        with self._lock:
            discarded = list(self._pending.values())
            self._pending.clear()
            PENDING_COMMANDS.set(0)
        for pending in discarded:
            if pending.timer is not None:
                pending.timer.cancel()
        if discarded:
            logger.info("[CMD] Shutdown discarded %d pending commands", len(discarded))
        return len(discarded)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_pending(self, correlation_id: str) -> bool:
        with self._lock:
            return correlation_id in self._pending

    def pending_commands(self) -> list[dict[str, Any]]:
        with self._lock:
            snapshot = list(self._pending.values())
        return [
            {
                "correlationId": p.correlation_id,
                "deviceId": p.device_id,
                "tenantId": p.tenant_id,
                "command": p.command,
                "issuedAt": p.issued_at.isoformat(),
                "timeoutAt": p.timeout_at.isoformat(),
                "issuerId": p.issuer_id,
            }
            for p in snapshot
        ]
