"""Tests de persistencia: SqlDeviceRepository (SQLite) y PersistenceWriter."""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import select

from common.config import Settings
from common.db import get_engine
from gateway_api.core.domain import (
    AccessEvent,
    CommandRecord,
    CommandStatus,
    Device,
    DeviceStatus,
    PendingCommand,
    TelemetrySnapshot,
)
from gateway_api.infrastructure.audit.audit_logger import AuditLogger
from gateway_api.infrastructure.persistence import PersistenceWriter, SqlDeviceRepository
from gateway_api.infrastructure.persistence.tables import access_logs, audit_logs


@pytest.fixture
def engine(tmp_path):
    return get_engine(Settings(database_url=f"sqlite:///{tmp_path / 'gateway.db'}", db_pool_size=1, db_echo=False))


@pytest.fixture
def sql_repo(engine):
    repo = SqlDeviceRepository(engine)
    repo.create_schema()
    repo.create_device(Device(id="D1", tenant_id="T1", status=DeviceStatus.ONLINE, features=["nfc"]))
    return repo


def record(cid, clock):
    return CommandRecord.from_pending(PendingCommand(
        correlation_id=cid, device_id="D1", tenant_id="T1", command="lock",
        parameters={"duration": 5}, issued_at=clock.now,
        timeout_at=clock.now + timedelta(seconds=5), timeout_ms=5000,
    ))


# =============================================================================
# TEST 1: REPOSITORIO SQL
# =============================================================================

class TestSqlDeviceRepository:

    def test_device_roundtrip_and_state_update(self, sql_repo, clock):
        sql_repo.update_device_state("D1", status=DeviceStatus.MAINTENANCE, firmware_version="1.2.3")
        device = sql_repo.get_device("D1")

        assert device.tenant_id == "T1"
        assert device.status == DeviceStatus.MAINTENANCE
        assert device.firmware_version == "1.2.3"
        assert device.features == ["nfc"]

    def test_decommissioned_is_terminal(self, sql_repo, clock):
        sql_repo.update_device_state("D1", status=DeviceStatus.DECOMMISSIONED)
        sql_repo.update_device_state("D1", status=DeviceStatus.OFFLINE, last_seen=clock.now)
        sql_repo.update_device_state("D1", last_seen=clock.now, ip_address="10.0.0.9")

        device = sql_repo.get_device("D1")
        assert device.status == DeviceStatus.DECOMMISSIONED
        assert device.ip_address is None
        assert sql_repo.list_active_devices() == []

    def test_list_active_excludes_decommissioned(self, sql_repo):
        sql_repo.create_device(Device(id="OLD", tenant_id="T1", status=DeviceStatus.DECOMMISSIONED))
        assert [d.id for d in sql_repo.list_active_devices()] == ["D1"]

    def test_finalize_exactly_once(self, sql_repo, clock):
        sql_repo.create_command_record(record("cmd_1", clock))

        assert sql_repo.finalize_command_record("cmd_1", CommandStatus.TIMEOUT, error="timed out") is True
        assert sql_repo.finalize_command_record("cmd_1", CommandStatus.COMPLETED, result={"locked": True}) is False

        stored = sql_repo.get_command_record("cmd_1")
        assert stored.status == CommandStatus.TIMEOUT
        assert stored.result is None
        assert stored.parameters == {"duration": 5}

    def test_finalize_rejects_pending_status(self, sql_repo, clock):
        sql_repo.create_command_record(record("cmd_2", clock))
        with pytest.raises(ValueError):
            sql_repo.finalize_command_record("cmd_2", CommandStatus.PENDING)

    def test_mark_stale_pending_commands(self, sql_repo, clock):
        sql_repo.create_command_record(record("cmd_a", clock))
        sql_repo.create_command_record(record("cmd_b", clock))
        sql_repo.finalize_command_record("cmd_b", CommandStatus.COMPLETED)

        count = sql_repo.mark_stale_pending_commands(clock.now + timedelta(minutes=1), CommandStatus.TIMEOUT, "abandoned")

        assert count == 1
        assert sql_repo.get_command_record("cmd_a").status == CommandStatus.TIMEOUT
        assert sql_repo.get_command_record("cmd_b").status == CommandStatus.COMPLETED

    def test_snapshot_upsert_overwrites(self, sql_repo, clock):
        sql_repo.upsert_snapshot(TelemetrySnapshot("D1", "T1", clock.now, status="online", cpu_usage=10))
        sql_repo.upsert_snapshot(TelemetrySnapshot("D1", "T1", clock.now, status="online", cpu_usage=20))

        assert sql_repo.get_snapshot("D1").cpu_usage == 20

    def test_access_log_insert(self, sql_repo, engine, clock):
        sql_repo.create_access_log(AccessEvent(
            device_id="GATE-1", tenant_id="T1", access_method="card", granted=False,
            timestamp=clock.now, failure_reason="tampering", metadata={"ipAddress": "10.0.0.1"},
        ))
        with engine.connect() as conn:
            row = conn.execute(select(access_logs)).mappings().one()
        assert row["failure_reason"] == "tampering"
        assert row["ip_address"] == "10.0.0.1"


class TestAuditLogger:

    def test_writes_to_table(self, sql_repo, engine):
        AuditLogger(engine).log_event("device_alert", "T1", {"deviceId": "D1"})
        with engine.connect() as conn:
            rows = conn.execute(audit_logs.select()).mappings().all()
        assert [r["event_type"] for r in rows] == ["device_alert"]

    def test_falls_back_to_logger_without_engine(self, caplog):
        with caplog.at_level("INFO", logger="audit"):
            AuditLogger().log_event("access_attempt", "T1", {"deviceId": "GATE-1"})
        assert any(r.name == "audit" for r in caplog.records)


# =============================================================================
# TEST 2: PERSISTENCE WRITER
# =============================================================================

class TestPersistenceWriter:

    def test_same_key_keeps_submission_order(self):
        writer = PersistenceWriter(num_workers=4, max_queue_size=100)
        writer.start()
        seen = []
        try:
            for n in range(50):
                writer.submit("cmd_same", seen.append, n)
            writer.flush()
        finally:
            writer.stop()
        assert seen == list(range(50))

    def test_full_queue_drops_without_blocking(self):
        writer = PersistenceWriter(num_workers=1, max_queue_size=1)
        assert writer.submit("k", lambda: None) is True
        assert writer.submit("k", lambda: None) is False
        assert writer.metrics["dropped"] == 1

    def test_failing_write_is_logged_not_raised(self, caplog):
        writer = PersistenceWriter(num_workers=1)
        writer.start()
        done = threading.Event()

        def boom():
            raise RuntimeError("db down")

        try:
            writer.submit("k", boom, description="boom")
            writer.submit("k", done.set)
            writer.flush()
        finally:
            writer.stop()

        assert done.is_set()
        assert writer.metrics["errors"] == 1
        assert any("boom failed" in r.getMessage() for r in caplog.records)
