import os
import signal
from unittest.mock import MagicMock

import pytest

from mqttcli.core.shutdown import ShutdownCoordinator, ShutdownState
from mqttcli.mqtt_client import BrokerConnection

from test_mqtt_client import RecordingHandler


@pytest.fixture
def restore_signals():
    saved = {s: signal.getsignal(s) for s in (signal.SIGINT, signal.SIGTERM)}
    yield
    for s, h in saved.items():
        signal.signal(s, h)


def test_starts_running():
    assert ShutdownCoordinator(MagicMock()).state is ShutdownState.RUNNING


def test_request_moves_to_shutdown_requested():
    coord = ShutdownCoordinator(MagicMock())
    coord.request_shutdown(signal.SIGINT)

    assert coord.state is ShutdownState.SHUTDOWN_REQUESTED
    assert coord.is_requested()


def test_repeated_signal_is_ignored():
    conn = MagicMock()
    coord = ShutdownCoordinator(conn)
    coord.request_shutdown(signal.SIGINT)
    coord.shutdown()
    coord.request_shutdown(signal.SIGTERM)

    assert coord.state is ShutdownState.EXITED
    conn.disconnect.assert_called_once()


def test_shutdown_without_request_does_nothing(caplog):
    conn = MagicMock()
    coord = ShutdownCoordinator(conn)

    coord.shutdown()

    conn.disconnect.assert_not_called()
    assert coord.state is ShutdownState.RUNNING


def test_shutdown_passes_grace_period():
    conn = MagicMock()
    coord = ShutdownCoordinator(conn, grace_s=0.25)
    coord.request_shutdown(signal.SIGTERM)
    coord.shutdown()
    conn.disconnect.assert_called_once_with(0.25)


def test_disconnect_failure_does_not_block_exit(caplog):
    conn = MagicMock()
    conn.disconnect.side_effect = RuntimeError("stuck")
    coord = ShutdownCoordinator(conn)
    coord.request_shutdown(signal.SIGINT)

    coord.shutdown()

    assert coord.state is ShutdownState.EXITED
    assert "Error disconnecting MQTT" in caplog.text


def test_installs_only_int_and_term(restore_signals):
    coord = ShutdownCoordinator(MagicMock())
    previous_hup = signal.getsignal(signal.SIGHUP)
    coord.install_signal_handlers()

    assert signal.getsignal(signal.SIGINT) == coord._handle_signal
    assert signal.getsignal(signal.SIGTERM) == coord._handle_signal
    assert signal.getsignal(signal.SIGHUP) == previous_hup

    coord.restore_signal_handlers()
    assert signal.getsignal(signal.SIGINT) != coord._handle_signal


@pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTERM])
def test_real_signal_unblocks_wait(restore_signals, signum):
    conn = MagicMock()
    coord = ShutdownCoordinator(conn)
    coord.install_signal_handlers()

    os.kill(os.getpid(), signum)
    coord.wait(poll_s=0.01)
    coord.shutdown()

    assert coord.state is ShutdownState.EXITED
    assert signal.getsignal(signum) != coord._handle_signal


def test_scenario_c_interrupt_after_connect(spec, broker, fake_paho_client, restore_signals):
    conn = BrokerConnection(spec)
    handler = RecordingHandler()
    conn.connect()
    conn.subscribe(spec.topic, spec.qos, handler)

    coord = ShutdownCoordinator(conn)
    coord.install_signal_handlers()
    states = [coord.state]

    broker.deliver("x/y", b"before", qos=1)

    def _during_disconnect():
        states.append(coord.state)
        broker.deliver("x/y", b"during", qos=1)

    broker.on_disconnect_call = _during_disconnect

    coord._handle_signal(signal.SIGINT, None)
    states.append(coord.state)
    coord.wait(poll_s=0.01)
    coord.shutdown()
    states.append(coord.state)
    broker.deliver("x/y", b"after", qos=1)

    assert states == [
        ShutdownState.RUNNING,
        ShutdownState.SHUTDOWN_REQUESTED,
        ShutdownState.DISCONNECTING,
        ShutdownState.EXITED,
    ]
    assert handler.calls == [("x/y", 1, b"before")]
    fake_paho_client.loop_stop.assert_called_once()


def test_delivery_gate_closes_before_disconnecting_state():
    conn = MagicMock()
    coord = ShutdownCoordinator(conn)
    seen = {}
    conn.close_delivery.side_effect = lambda: seen.setdefault("close_delivery", coord.state)
    conn.disconnect.side_effect = lambda grace_s: seen.setdefault("disconnect", coord.state)
    coord.request_shutdown(signal.SIGINT)

    coord.shutdown()

    assert seen == {
        "close_delivery": ShutdownState.SHUTDOWN_REQUESTED,
        "disconnect": ShutdownState.DISCONNECTING,
    }


def test_no_callback_once_disconnecting(spec, broker, fake_paho_client):
    conn = BrokerConnection(spec)
    coord = ShutdownCoordinator(conn)
    seen_states = []

    class StateRecorder(RecordingHandler):
        def on_message(self, topic, qos, payload):
            seen_states.append(coord.state)
            super().on_message(topic, qos, payload)

    handler = StateRecorder()
    conn.connect()
    conn.subscribe(spec.topic, spec.qos, handler)

    real_disconnect = conn.disconnect

    def _deliver_then_disconnect(grace_s):
        # a message racing in after the state change, before DISCONNECT is sent
        broker.deliver("x/y", b"racing", qos=1)
        real_disconnect(grace_s)

    conn.disconnect = _deliver_then_disconnect

    broker.deliver("x/y", b"before", qos=1)
    coord.request_shutdown(signal.SIGINT)
    coord.shutdown()

    assert ShutdownState.DISCONNECTING not in seen_states
    assert handler.calls == [("x/y", 1, b"before")]
    assert coord.state is ShutdownState.EXITED
