"""Tests del BrokerConnectionManager (cliente paho simulado).

Cubre:
1. Conexión: suscripciones, liveness online, listeners
2. Fail-fast de publish/subscribe sin conexión
3. Reconexión acotada y cierre definitivo
4. Desconexión ordenada con liveness offline
"""

from unittest.mock import MagicMock

import orjson
import paho.mqtt.client as mqtt
import pytest

from gateway_api.errors import BrokerUnavailable, DispatchFailure
from gateway_api.mqtt.connection import BrokerConnectionManager, ConnectionListener, ConnectionState
from gateway_api.mqtt.topics import subscription_patterns


class RecordingListener(ConnectionListener):
    def __init__(self):
        self.connected = 0
        self.disconnected = []
        self.reconnecting = []
        self.errors = []

    def on_connected(self):
        self.connected += 1

    def on_disconnected(self, reason):
        self.disconnected.append(reason)

    def on_reconnecting(self, attempt, max_attempts):
        self.reconnecting.append((attempt, max_attempts))

    def on_error(self, error):
        self.errors.append(error)


@pytest.fixture
def messages():
    return []


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def manager(mqtt_config, paho_client, messages, listener):
    m = BrokerConnectionManager(
        mqtt_config,
        lambda topic, payload: messages.append((topic, payload)),
        client_factory=lambda cfg: paho_client,
    )
    m.add_listener(listener)
    m.connect()
    return m


def connect_ok(manager, client):
    manager._on_connect(client, None, None, 0, None)


# =============================================================================
# TEST 1: CONEXIÓN
# =============================================================================

class TestConnect:

    def test_connect_is_async_with_retained_offline_will(self, manager, paho_client, mqtt_config):
        paho_client.connect_async.assert_called_once_with(
            mqtt_config.broker_host, mqtt_config.broker_port, keepalive=mqtt_config.keepalive,
        )
        paho_client.loop_start.assert_called_once()
        topic, payload = paho_client.will_set.call_args.args
        assert topic == "skyn3t/system/backend/status"
        assert orjson.loads(payload)["status"] == "offline"
        assert paho_client.will_set.call_args.kwargs["retain"] is True
        assert manager.state == ConnectionState.CONNECTING

    def test_on_connect_subscribes_publishes_online_and_notifies(self, manager, paho_client, listener, published):
        connect_ok(manager, paho_client)

        subscribed = [c.args[0] for c in paho_client.subscribe.call_args_list]
        assert subscribed == subscription_patterns("skyn3t")
        (online,) = published(paho_client, "skyn3t/system/backend/status")
        assert online["status"] == "online"
        assert paho_client.publish.call_args.kwargs["retain"] is True
        assert listener.connected == 1
        assert manager.is_connected

    def test_refused_connection_does_not_mark_connected(self, manager, paho_client, listener):
        manager._on_connect(paho_client, None, None, 5, None)
        assert not manager.is_connected
        assert listener.connected == 0

    def test_message_forwarded_to_handler(self, manager, paho_client, messages):
        msg = MagicMock(topic="skyn3t/T1/devices/D1/status", payload=b"{}")
        manager._on_message(paho_client, None, msg)
        assert messages == [("skyn3t/T1/devices/D1/status", b"{}")]


# =============================================================================
# TEST 2: FAIL-FAST
# =============================================================================

class TestFailFast:

    def test_publish_while_disconnected_raises(self, manager):
        with pytest.raises(BrokerUnavailable):
            manager.publish("skyn3t/T1/devices/D1/commands", {"command": "lock"})

    def test_subscribe_while_disconnected_raises(self, manager):
        with pytest.raises(BrokerUnavailable):
            manager.subscribe("skyn3t/+/extra/+")

    def test_publish_encodes_json(self, manager, paho_client):
        connect_ok(manager, paho_client)
        manager.publish("skyn3t/T1/devices/D1/commands", {"command": "lock"})
        topic, data = paho_client.publish.call_args.args
        assert orjson.loads(data) == {"command": "lock"}

    def test_publish_rc_error_raises_dispatch_failure(self, manager, paho_client):
        connect_ok(manager, paho_client)
        paho_client.publish.return_value.rc = mqtt.MQTT_ERR_NO_CONN
        with pytest.raises(DispatchFailure):
            manager.publish("skyn3t/T1/devices/D1/commands", {"command": "lock"})


# =============================================================================
# TEST 3: RECONEXIÓN ACOTADA
# =============================================================================

class TestReconnect:

    def test_gives_up_after_max_attempts(self, manager, paho_client, listener):
        connect_ok(manager, paho_client)
        manager._on_disconnect(paho_client, None, None, 7, None)
        manager._on_connect_fail(paho_client, None)
        manager._on_connect_fail(paho_client, None)
        assert manager.state == ConnectionState.RECONNECTING
        assert [a for a, _ in listener.reconnecting] == [1, 2, 3]

        manager._on_connect_fail(paho_client, None)

        assert manager.state == ConnectionState.CLOSED
        paho_client.disconnect.assert_called_once()
        paho_client.loop_stop.assert_called_once()
        assert len(listener.errors) == 1
        assert isinstance(listener.errors[0], BrokerUnavailable)

        # Nada más se cuenta ni se notifica
        manager._on_connect_fail(paho_client, None)
        manager._on_disconnect(paho_client, None, None, 7, None)
        assert len(listener.reconnecting) == 3
        assert len(listener.errors) == 1
        with pytest.raises(BrokerUnavailable):
            manager.publish("x", {})

    def test_successful_reconnect_resets_counter(self, manager, paho_client, listener):
        connect_ok(manager, paho_client)
        manager._on_disconnect(paho_client, None, None, 7, None)
        manager._on_connect_fail(paho_client, None)
        assert manager.reconnect_attempts == 2

        connect_ok(manager, paho_client)
        assert manager.reconnect_attempts == 0
        assert listener.connected == 2
        assert listener.disconnected == ["7"]

    def test_health_reports_fatal_when_closed(self, manager, paho_client):
        for _ in range(4):
            manager._on_connect_fail(paho_client, None)
        health = manager.health_check()
        assert health["fatal"] is True
        assert health["healthy"] is False


# =============================================================================
# TEST 4: DESCONEXIÓN ORDENADA
# =============================================================================

class TestDisconnect:

    def test_disconnect_publishes_offline_retained(self, manager, paho_client, published):
        connect_ok(manager, paho_client)
        manager.disconnect()

        statuses = [p["status"] for p in published(paho_client, "skyn3t/system/backend/status")]
        assert statuses == ["online", "offline"]
        paho_client.disconnect.assert_called_once()
        paho_client.loop_stop.assert_called_once()
        assert manager.state == ConnectionState.STOPPED

    def test_disconnect_callback_after_stop_is_not_a_reconnect(self, manager, paho_client, listener):
        connect_ok(manager, paho_client)
        manager.disconnect()
        manager._on_disconnect(paho_client, None, None, 0, None)
        assert listener.reconnecting == []
        assert listener.disconnected == []
