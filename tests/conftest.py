"""Fixtures compartidas: repositorio en memoria, observer que graba,
timers manuales, reloj controlable y cliente paho simulado."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from unittest.mock import MagicMock

import orjson
import paho.mqtt.client as mqtt
import pytest

from gateway_api.config import GatewayConfig
from gateway_api.core.domain import (
    AccessEvent,
    CommandRecord,
    CommandStatus,
    Device,
    DeviceRepository,
    DeviceStatus,
    RealtimeObserver,
    TelemetrySnapshot,
)
from gateway_api.gateway import DeviceGateway
from gateway_api.infrastructure.audit.audit_logger import AuditLogger
from gateway_api.infrastructure.persistence.writer import PersistenceWriter
from gateway_api.mqtt.config import MQTTConfig

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# DOBLES DE PRUEBA
# =============================================================================

class FakeRepository(DeviceRepository):
    """Repositorio en memoria con el mismo guard de finalización que SQL."""

    def __init__(self, devices: Optional[list[Device]] = None):
        self.devices: dict[str, Device] = {d.id: d for d in devices or []}
        self.commands: dict[str, CommandRecord] = {}
        self.snapshots: dict[str, TelemetrySnapshot] = {}
        self.access_logs: list[AccessEvent] = []
        self.state_updates: list[tuple[str, dict[str, Any]]] = []
        self.finalize_calls: list[tuple[str, CommandStatus]] = []
        self.fail_writes = False
        self._lock = threading.Lock()

    def _check(self):
        if self.fail_writes:
            raise RuntimeError("database unavailable")

    def get_device(self, device_id):
        return self.devices.get(device_id)

    def list_active_devices(self):
        return [d for d in self.devices.values() if not d.is_decommissioned]

    def create_device(self, device):
        self._check()
        self.devices[device.id] = device
        return device

    def update_device_state(self, device_id, *, status=None, last_seen=None, firmware_version=None, ip_address=None):
        self._check()
        changes = {
            k: v for k, v in {
                "status": status,
                "last_seen": last_seen,
                "firmware_version": firmware_version,
                "ip_address": ip_address,
            }.items() if v is not None
        }
        with self._lock:
            self.state_updates.append((device_id, changes))
            device = self.devices.get(device_id)
            if device is None:
                return
            if device.is_decommissioned and status is not DeviceStatus.DECOMMISSIONED:
                return
            self.devices[device_id] = replace(device, **changes)

    def create_command_record(self, record):
        self._check()
        with self._lock:
            self.commands[record.correlation_id] = record

    def finalize_command_record(self, correlation_id, status, *, result=None, error=None, completed_at=None):
        self._check()
        with self._lock:
            self.finalize_calls.append((correlation_id, status))
            record = self.commands.get(correlation_id)
            if record is None or record.status != CommandStatus.PENDING:
                return False
            self.commands[correlation_id] = replace(
                record, status=status, result=result, error=error, completed_at=completed_at,
            )
            return True

    def upsert_snapshot(self, snapshot):
        self._check()
        with self._lock:
            self.snapshots[snapshot.device_id] = snapshot

    def create_access_log(self, event):
        self._check()
        with self._lock:
            self.access_logs.append(event)

    def mark_stale_pending_commands(self, before, status, error):
        count = 0
        with self._lock:
            for cid, record in list(self.commands.items()):
                if record.status == CommandStatus.PENDING and record.sent_at < before:
                    self.commands[cid] = replace(record, status=status, error=error, completed_at=before)
                    count += 1
        return count


class RecordingObserver(RealtimeObserver):
    def __init__(self):
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def emit_to_tenant(self, tenant_id, event_name, payload):
        self.events.append((tenant_id, event_name, payload))

    def named(self, event_name: str) -> list[tuple[str, dict[str, Any]]]:
        return [(t, p) for t, name, p in self.events if name == event_name]


class ManualTimer:
    def __init__(self, seconds: float, callback: Callable[[], None]):
        self.seconds = seconds
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        # Igual que threading.Timer: cancelado → no corre
        if self.started and not self.cancelled:
            self.callback()


class ManualTimerFactory:
    def __init__(self):
        self.timers: list[ManualTimer] = []

    def __call__(self, seconds, callback):
        timer = ManualTimer(seconds, callback)
        self.timers.append(timer)
        return timer

    @property
    def last(self) -> ManualTimer:
        return self.timers[-1]


class Clock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> None:
        self.now = self.now + timedelta(milliseconds=ms)


def make_paho_client() -> MagicMock:
    client = MagicMock()
    client.publish.return_value.rc = mqtt.MQTT_ERR_SUCCESS
    client.subscribe.return_value = (mqtt.MQTT_ERR_SUCCESS, 1)
    return client


def _published(client: MagicMock, topic: str) -> list[dict[str, Any]]:
    """Payloads (decodificados) publicados por el mock en un topic."""
    out = []
    for call in client.publish.call_args_list:
        if call.args and call.args[0] == topic:
            out.append(orjson.loads(call.args[1]))
    return out


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def timers() -> ManualTimerFactory:
    return ManualTimerFactory()


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository([
        Device(id="D1", tenant_id="T1", status=DeviceStatus.ONLINE),
        Device(id="D2", tenant_id="T1", status=DeviceStatus.ONLINE),
        Device(id="D3", tenant_id="T1", status=DeviceStatus.OFFLINE),
        Device(id="OLD", tenant_id="T1", status=DeviceStatus.DECOMMISSIONED),
        Device(id="X1", tenant_id="T2", status=DeviceStatus.ONLINE),
    ])


@pytest.fixture
def writer():
    w = PersistenceWriter(num_workers=2, max_queue_size=100)
    w.start()
    yield w
    w.stop()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def audit() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def paho_client() -> MagicMock:
    return make_paho_client()


@pytest.fixture
def mqtt_config() -> MQTTConfig:
    return MQTTConfig(client_id="gateway-test", topic_root="skyn3t", max_reconnect_attempts=3)


@pytest.fixture
def gateway(repository, mqtt_config, observer, audit, paho_client, timers, clock):
    """Gateway arrancado y 'conectado' contra el cliente paho simulado."""
    gw = DeviceGateway(
        repository,
        mqtt_config,
        config=GatewayConfig(reconcile_on_start=False, refresh_status_on_connect=False, default_timeout_ms=5000),
        observer=observer,
        audit=audit,
        client_factory=lambda cfg: paho_client,
        timer_factory=timers,
        clock=clock,
    )
    gw.start()
    gw.connection._on_connect(paho_client, None, None, 0, None)
    yield gw
    gw.stop()




@pytest.fixture
def published():
    return _published
