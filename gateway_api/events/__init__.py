"""Fan-out de eventos hacia observers en tiempo real y auditoría."""

from .fanout import EventFanout
from .severity import classify_denial
from .websocket import TenantWebSocketHub

__all__ = ["EventFanout", "TenantWebSocketHub", "classify_denial"]
