"""Tests del correlador de comandos.

Cubre:
1. Respuesta antes del timeout → completed, timer cancelado
2. Timeout → una sola liquidación; respuesta tardía descartada
3. Validación síncrona (DeviceNotFound, sin red)
4. Bulk best-effort
5. Fallo de publish
6. Shutdown sin finalizar

Ejecutar:
    pytest tests/test_correlator.py -v
"""

import logging
from unittest.mock import MagicMock

import pytest

from gateway_api.commands import CommandCorrelator, new_correlation_id
from gateway_api.core.domain import CommandStatus
from gateway_api.errors import BrokerUnavailable, DeviceNotFound, DispatchFailure
from gateway_api.mqtt.validators import CommandResponsePayload


def response(cid, outcome="completed", **extra):
    return CommandResponsePayload.model_validate({"correlationId": cid, "outcome": outcome, **extra})


@pytest.fixture
def publisher():
    return MagicMock()


@pytest.fixture
def settlements():
    return []


@pytest.fixture
def correlator(repository, publisher, writer, timers, clock, settlements):
    c = CommandCorrelator(
        repository,
        publisher,
        writer,
        topic_root="skyn3t",
        default_timeout_ms=30000,
        timer_factory=timers,
        clock=clock,
    )
    c.add_settlement_listener(settlements.append)
    return c


# =============================================================================
# TEST 1: RESPUESTA ANTES DEL TIMEOUT
# =============================================================================

class TestResponseBeforeTimeout:

    def test_lock_scenario_completes_once(self, correlator, repository, writer, timers, clock, settlements):
        """D1/T1, lock con 5000ms; respuesta completed a los 1200ms."""
        cid = correlator.send_command("D1", "lock", timeout_ms=5000, issuer_id="u-1")
        timer = timers.last
        assert timer.seconds == 5.0
        assert timer.started

        clock.advance(1200)
        handled = correlator.handle_response("D1", response(cid, result={"locked": True}))
        writer.flush()

        assert handled is True
        assert timer.cancelled
        assert len(settlements) == 1
        assert settlements[0].outcome == CommandStatus.COMPLETED
        assert settlements[0].result == {"locked": True}
        assert settlements[0].latency_ms == pytest.approx(1200)
        assert repository.commands[cid].status == CommandStatus.COMPLETED
        assert correlator.pending_count == 0

        # El timer ya no liquida nada
        timer.callback()
        writer.flush()
        assert len(settlements) == 1

    def test_failed_outcome_carries_error(self, correlator, repository, writer, settlements):
        cid = correlator.send_command("D1", "unlock")
        correlator.handle_response("D1", response(cid, outcome="failed", error="motor jammed"))
        writer.flush()

        assert settlements[0].outcome == CommandStatus.FAILED
        assert repository.commands[cid].error == "motor jammed"

    def test_legacy_command_id_and_status_fields(self, correlator, settlements):
        cid = correlator.send_command("D1", "reboot")
        legacy = CommandResponsePayload.model_validate({"commandId": cid, "status": "COMPLETED"})

        assert correlator.handle_response("D1", legacy) is True
        assert settlements[0].outcome == CommandStatus.COMPLETED

    def test_unrecognized_outcome_settles_as_failed(self, correlator, settlements):
        cid = correlator.send_command("D1", "reboot")
        correlator.handle_response("D1", response(cid, outcome="weird"))

        assert settlements[0].outcome == CommandStatus.FAILED
        assert "weird" in settlements[0].error

    def test_response_from_other_device_is_dropped(self, correlator, settlements):
        cid = correlator.send_command("D1", "lock")

        assert correlator.handle_response("D2", response(cid)) is False
        assert settlements == []
        assert correlator.is_pending(cid)


# =============================================================================
# TEST 2: TIMEOUT
# =============================================================================

class TestTimeout:

    def test_timeout_then_late_response_is_dropped(self, correlator, repository, writer, timers, clock, settlements):
        cid = correlator.send_command("D1", "lock", timeout_ms=5000)

        clock.advance(5000)
        timers.last.fire()
        writer.flush()

        assert len(settlements) == 1
        assert settlements[0].outcome == CommandStatus.TIMEOUT
        assert "5000ms" in settlements[0].error
        assert repository.commands[cid].status == CommandStatus.TIMEOUT

        clock.advance(1000)
        assert correlator.handle_response("D1", response(cid)) is False
        writer.flush()

        assert len(settlements) == 1
        assert repository.commands[cid].status == CommandStatus.TIMEOUT

    def test_default_timeout_used_when_unspecified(self, correlator, timers):
        correlator.send_command("D1", "lock")
        assert timers.last.seconds == 30.0

    def test_timer_firing_twice_settles_once(self, correlator, timers, settlements):
        correlator.send_command("D1", "lock")
        timers.last.callback()
        timers.last.callback()
        assert len(settlements) == 1


# =============================================================================
# TEST 3: VALIDACIÓN SÍNCRONA
# =============================================================================

class TestValidation:

    def test_unknown_device_raises_without_publishing(self, correlator, publisher, timers):
        with pytest.raises(DeviceNotFound):
            correlator.send_command("NOPE", "lock")
        publisher.publish.assert_not_called()
        assert timers.timers == []

    def test_decommissioned_device_raises(self, correlator, publisher):
        with pytest.raises(DeviceNotFound) as exc:
            correlator.send_command("OLD", "lock")
        assert exc.value.reason == "decommissioned"
        publisher.publish.assert_not_called()


# =============================================================================
# TEST 4: DESPACHO
# =============================================================================

class TestDispatch:

    def test_payload_published_to_device_command_topic(self, correlator, publisher, repository, writer):
        cid = correlator.send_command("D1", "lock", {"duration": 5}, timeout_ms=5000, issuer_id="u-9")
        writer.flush()

        topic, payload = publisher.publish.call_args.args
        assert topic == "skyn3t/T1/devices/D1/commands"
        assert payload["correlationId"] == cid
        assert payload["command"] == "lock"
        assert payload["parameters"] == {"duration": 5}
        assert payload["timeoutMs"] == 5000
        assert payload["issuerId"] == "u-9"
        assert "issuedAt" in payload
        assert repository.commands[cid].status == CommandStatus.PENDING

    def test_correlation_ids_unique_under_burst(self):
        ids = {new_correlation_id() for _ in range(2000)}
        assert len(ids) == 2000
        assert all(i.startswith("cmd_") for i in ids)

    def test_pending_commands_listing(self, correlator):
        cid = correlator.send_command("D1", "lock")
        listing = correlator.pending_commands()
        assert [p["correlationId"] for p in listing] == [cid]
        assert listing[0]["tenantId"] == "T1"


class TestBulkCommand:

    def test_one_invalid_device_yields_n_minus_one(self, correlator, caplog):
        with caplog.at_level(logging.ERROR, logger="gateway_api.commands.correlator"):
            cids = correlator.bulk_command(["D1", "NOPE", "D2"], "lock", issuer_id="u-1")

        assert len(cids) == 2
        failures = [
            r for r in caplog.records
            if r.levelno == logging.ERROR and r.name == "gateway_api.commands.correlator"
        ]
        assert len(failures) == 1
        assert "NOPE" in failures[0].getMessage()

    def test_publish_failure_does_not_abort_batch(self, correlator, publisher):
        publisher.publish.side_effect = [None, DispatchFailure(None, "boom"), None]
        cids = correlator.bulk_command(["D1", "D2", "D3"], "lock")
        assert len(cids) == 2

    def test_dispatch_order_is_issuance_order(self, correlator, publisher):
        correlator.bulk_command(["D3", "D1", "D2"], "get_status")
        topics = [c.args[0] for c in publisher.publish.call_args_list]
        assert topics == [
            "skyn3t/T1/devices/D3/commands",
            "skyn3t/T1/devices/D1/commands",
            "skyn3t/T1/devices/D2/commands",
        ]


# =============================================================================
# TEST 5: FALLO DE PUBLISH
# =============================================================================

class TestPublishFailure:

    def test_broker_unavailable_propagates_and_record_failed(self, correlator, publisher, repository, writer, timers, settlements):
        publisher.publish.side_effect = BrokerUnavailable()

        with pytest.raises(BrokerUnavailable) as exc:
            correlator.send_command("D1", "lock")
        writer.flush()

        assert exc.value.device_id == "D1"
        assert timers.last.cancelled
        assert correlator.pending_count == 0
        assert settlements == []
        (record,) = repository.commands.values()
        assert record.status == CommandStatus.FAILED

    def test_unexpected_publish_error_wrapped(self, correlator, publisher):
        publisher.publish.side_effect = OSError("socket closed")
        with pytest.raises(DispatchFailure):
            correlator.send_command("D1", "lock")

    def test_persistence_failure_does_not_block_settlement(self, correlator, repository, writer, settlements):
        repository.fail_writes = True
        cid = correlator.send_command("D1", "lock")
        correlator.handle_response("D1", response(cid))
        writer.flush()

        assert len(settlements) == 1
        assert writer.metrics["errors"] >= 2


# =============================================================================
# TEST 6: SHUTDOWN
# =============================================================================

class TestShutdown:

    def test_shutdown_cancels_timers_without_finalizing(self, correlator, repository, writer, timers, settlements):
        cid1 = correlator.send_command("D1", "lock")
        cid2 = correlator.send_command("D2", "lock")

        assert correlator.shutdown() == 2
        writer.flush()

        assert all(t.cancelled for t in timers.timers)
        assert correlator.pending_count == 0
        assert settlements == []
        assert repository.commands[cid1].status == CommandStatus.PENDING
        assert repository.commands[cid2].status == CommandStatus.PENDING
