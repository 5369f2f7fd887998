"""Modelos de comandos y correlación."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol


class CommandStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self != CommandStatus.PENDING


class TimerHandle(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


@dataclass
class PendingCommand:
    """Comando en vuelo. Vive solo en memoria hasta su liquidación."""
    correlation_id: str
    device_id: str
    tenant_id: str
    command: str
    parameters: dict[str, Any]
    issued_at: datetime
    timeout_at: datetime
    timeout_ms: int
    issuer_id: Optional[str] = None
    timer: Optional[TimerHandle] = field(default=None, repr=False)

    def to_payload(self) -> dict[str, Any]:
        """Payload publicado en el topic de comandos del dispositivo."""
        return {
            "correlationId": self.correlation_id,
            "command": self.command,
            "parameters": self.parameters,
            "issuedAt": self.issued_at,
            "timeoutMs": self.timeout_ms,
            "issuerId": self.issuer_id,
        }


@dataclass
class CommandRecord:
    """Contraparte durable de PendingCommand."""
    correlation_id: str
    device_id: str
    tenant_id: str
    command: str
    parameters: dict[str, Any]
    status: CommandStatus
    sent_at: datetime
    issuer_id: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_pending(cls, pending: PendingCommand) -> "CommandRecord":
        return cls(
            correlation_id=pending.correlation_id,
            device_id=pending.device_id,
            tenant_id=pending.tenant_id,
            command=pending.command,
            parameters=pending.parameters,
            status=CommandStatus.PENDING,
            sent_at=pending.issued_at,
            issuer_id=pending.issuer_id,
        )


@dataclass(frozen=True)
class CommandSettlement:
    """Resultado terminal de un comando (completed, failed o timeout)."""
    correlation_id: str
    device_id: str
    tenant_id: str
    command: str
    outcome: CommandStatus
    issued_at: datetime
    settled_at: datetime
    issuer_id: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[str] = None

    @property
    def latency_ms(self) -> float:
        return (self.settled_at - self.issued_at).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlationId": self.correlation_id,
            "deviceId": self.device_id,
            "command": self.command,
            "outcome": self.outcome.value,
            "result": self.result,
            "error": self.error,
            "issuerId": self.issuer_id,
            "issuedAt": self.issued_at.isoformat(),
            "settledAt": self.settled_at.isoformat(),
        }
