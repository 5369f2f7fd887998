from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket
from prometheus_client import make_asgi_app

from common.config import get_settings
from common.db import get_engine

from .config import GatewayConfig
from .core.domain import Device
from .errors import BrokerUnavailable, DeviceNotFound, DispatchFailure
from .events import TenantWebSocketHub
from .gateway import DeviceGateway
from .infrastructure.audit.audit_logger import AuditLogger
from .infrastructure.persistence import SqlDeviceRepository
from .mqtt.config import MQTTConfig
from .schemas import BulkCommandIn, BulkCommandResult, CommandAccepted, CommandIn, DeviceIn, DeviceOut
from .telemetry import ThresholdTable

logger = logging.getLogger(__name__)


def build_gateway(hub: TenantWebSocketHub) -> DeviceGateway:
    """Gateway con la configuración del entorno y persistencia SQLAlchemy."""
    engine = get_engine(get_settings())
    repository = SqlDeviceRepository(engine)
    repository.create_schema()
    return DeviceGateway(
        repository,
        MQTTConfig.from_env(),
        config=GatewayConfig.from_env(),
        observer=hub,
        audit=AuditLogger(engine),
        thresholds=ThresholdTable.from_env(),
    )


def create_app(gateway: Optional[DeviceGateway] = None, hub: Optional[TenantWebSocketHub] = None) -> FastAPI:
    hub = hub or TenantWebSocketHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        hub.bind_loop(asyncio.get_running_loop())
        gw = gateway or build_gateway(hub)
        app.state.gateway = gw
        gw.start()
        try:
            yield
        finally:
            gw.stop()

    app = FastAPI(title="Device Gateway Service", version="0.1.0", lifespan=lifespan)
    app.state.hub = hub
    app.mount("/metrics", make_asgi_app())

    def _gateway(request: Request) -> DeviceGateway:
        return request.app.state.gateway

    @app.get("/health")
    def health(request: Request):
        return _gateway(request).health_check()

    @app.get("/stats")
    def stats(request: Request):
        return _gateway(request).stats

    @app.post("/devices", response_model=DeviceOut, status_code=201)
    def register_device(body: DeviceIn, request: Request):
        device = _gateway(request).register_device(
            Device(
                id=body.id,
                tenant_id=body.tenant_id,
                name=body.name,
                device_type=body.device_type,
                firmware_version=body.firmware_version,
                ip_address=body.ip_address,
                features=body.features,
            )
        )
        return DeviceOut(
            id=device.id,
            tenant_id=device.tenant_id,
            status=device.status.value,
            name=device.name,
            device_type=device.device_type,
            last_seen=device.last_seen,
        )

    @app.delete("/devices/{device_id}", status_code=204)
    def remove_device(device_id: str, request: Request):
        try:
            _gateway(request).remove_device(device_id)
        except DeviceNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/devices/{device_id}/commands", response_model=CommandAccepted, status_code=202)
    def send_command(device_id: str, body: CommandIn, request: Request):
        try:
            cid = _gateway(request).send_command(
                device_id,
                body.command,
                body.parameters,
                timeout_ms=body.timeout_ms,
                issuer_id=body.issuer_id,
            )
        except DeviceNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except BrokerUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        except DispatchFailure as e:
            raise HTTPException(status_code=502, detail=str(e))
        return CommandAccepted(correlationId=cid)

    @app.post("/commands/bulk", response_model=BulkCommandResult)
    def bulk_command(body: BulkCommandIn, request: Request):
        cids = _gateway(request).bulk_command(body.device_ids, body.command, body.parameters, issuer_id=body.issuer_id)
        return BulkCommandResult(correlationIds=cids, requested=len(body.device_ids), dispatched=len(cids))

    @app.get("/commands/pending")
    def pending_commands(request: Request):
        return _gateway(request).correlator.pending_commands()

    @app.get("/devices/connected")
    def connected_devices(request: Request):
        return {
            device_id: seen.isoformat()
            for device_id, seen in _gateway(request).connected_devices().items()
        }

    @app.get("/devices/{device_id}/telemetry")
    def device_telemetry(device_id: str, request: Request):
        snapshot = _gateway(request).get_snapshot(device_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"No telemetry for device '{device_id}'")
        return snapshot.to_dict()

    @app.websocket("/ws/tenants/{tenant_id}")
    async def tenant_events(websocket: WebSocket, tenant_id: str):
        await hub.serve(tenant_id, websocket)

    return app


app = create_app()
