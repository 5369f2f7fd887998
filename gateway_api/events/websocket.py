"""Salas WebSocket por tenant (observer en tiempo real de la API).

emit_to_tenant() se llama desde el thread de paho o desde un timer; el envío
se agenda en el event loop de la app con run_coroutine_threadsafe.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import orjson
from fastapi import WebSocket, WebSocketDisconnect

from ..core.domain import RealtimeObserver

logger = logging.getLogger(__name__)


class TenantWebSocketHub(RealtimeObserver):
    def __init__(self) -> None:
        self._rooms: dict[str, set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    async def connect(self, tenant_id: str, websocket: WebSocket) -> None:
        # En la sala solo entran sockets ya aceptados
        async with self._lock:
            await websocket.accept()
            self._rooms.setdefault(tenant_id, set()).add(websocket)
        logger.info("[WS] Client joined tenant=%s", tenant_id)

    async def disconnect(self, tenant_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            room = self._rooms.get(tenant_id)
            if room is not None:
                room.discard(websocket)
                if not room:
                    del self._rooms[tenant_id]

    async def serve(self, tenant_id: str, websocket: WebSocket) -> None:
        """Mantiene la sesión hasta que el cliente se va; siempre sale de la sala."""
        await self.connect(tenant_id, websocket)
        try:
            while True:
                # Solo entrega; lo que mande el cliente se ignora
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("[WS] Client left tenant=%s", tenant_id)
        finally:
            await self.disconnect(tenant_id, websocket)

    def room_size(self, tenant_id: str) -> int:
        return len(self._rooms.get(tenant_id, ()))

    def emit_to_tenant(self, tenant_id: str, event_name: str, payload: dict[str, Any]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("[WS] No event loop bound; %s for tenant=%s not delivered", event_name, tenant_id)
            return
        message = orjson.dumps({"event": event_name, "tenantId": tenant_id, "data": payload}).decode()
        asyncio.run_coroutine_threadsafe(self.broadcast(tenant_id, message), loop)

    async def broadcast(self, tenant_id: str, message: str) -> None:
        async with self._lock:
            targets = list(self._rooms.get(tenant_id, ()))
        if targets:
            await asyncio.gather(*(self._safe_send(tenant_id, ws, message) for ws in targets), return_exceptions=True)

    async def _safe_send(self, tenant_id: str, ws: WebSocket, message: str) -> None:
        try:
            await ws.send_text(message)
        except Exception:
            await self.disconnect(tenant_id, ws)
