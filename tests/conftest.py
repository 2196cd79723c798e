"""
Pytest configuration and shared fixtures
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from mqttcli.config import ConnectionSpec  # noqa: E402


class FakeBroker:
    """
    Drives the callbacks a real paho loop thread would fire, synchronously.

    Set connack/suback to None to simulate a broker that never answers.
    """

    def __init__(self, client):
        self.client = client
        self.connack = ReasonCode(PacketTypes.CONNACK, "Success")
        self.suback = [ReasonCode(PacketTypes.SUBACK, "Granted QoS 1")]
        self.connect_error = None
        self.confirm_disconnect = True
        self.on_disconnect_call = None  # hook run inside client.disconnect()

        client.connect.side_effect = self._connect
        client.subscribe.side_effect = self._subscribe
        client.disconnect.side_effect = self._disconnect

    def _connect(self, host, port, keepalive=60):
        if self.connect_error is not None:
            raise self.connect_error
        if self.connack is not None:
            self.client.on_connect(self.client, None, {}, self.connack, None)
        return mqtt.MQTT_ERR_SUCCESS

    def _subscribe(self, topic, qos=0):
        if self.suback is not None:
            self.client.on_subscribe(self.client, None, 1, self.suback, None)
        return (mqtt.MQTT_ERR_SUCCESS, 1)

    def _disconnect(self, *args, **kwargs):
        if self.on_disconnect_call is not None:
            self.on_disconnect_call()
        if self.confirm_disconnect:
            self.client.on_disconnect(
                self.client, None, None, ReasonCode(PacketTypes.DISCONNECT, "Normal disconnection"), None
            )
        return mqtt.MQTT_ERR_SUCCESS

    def drop(self, reason="Unspecified error"):
        self.client.on_disconnect(
            self.client, None, None, ReasonCode(PacketTypes.DISCONNECT, reason), None
        )

    def deliver(self, topic, payload, qos=0):
        msg = mqtt.MQTTMessage(mid=1, topic=topic.encode("utf-8"))
        msg.payload = payload
        msg.qos = qos
        callback = self.client.message_callback_add.call_args[0][1]
        callback(self.client, None, msg)


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    fake = MagicMock()
    fake.ctor_calls = []

    def _ctor(*args, **kwargs):
        fake.ctor_calls.append(kwargs)
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


@pytest.fixture
def broker(fake_paho_client):
    return FakeBroker(fake_paho_client)


@pytest.fixture
def spec():
    """Plain-TCP spec from end-to-end scenario A."""
    return ConnectionSpec(broker_url="tcp://localhost:1883", client_id="t1", topic="x/y", qos=1)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("MQTTCLI_"):
            monkeypatch.delenv(key, raising=False)


def _cert(subject, issuer, public_key, signing_key, *, ca):
    from cryptography import x509
    from cryptography.hazmat.primitives import hashes
    from cryptography.x509.oid import NameOID

    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer)]))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(signing_key, hashes.SHA256())
    )


def _key_pem(key, password=None):
    from cryptography.hazmat.primitives import serialization

    encryption = (
        serialization.BestAvailableEncryption(password)
        if password
        else serialization.NoEncryption()
    )
    return key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption
    )


@pytest.fixture(scope="session")
def pki(tmp_path_factory):
    """
    CA certificate, a client certificate signed by it with its key, an
    unrelated key, and an encrypted copy of the client key.
    """
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import ec

    d = tmp_path_factory.mktemp("pki")

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_cert = _cert("mqttcli test CA", "mqttcli test CA", ca_key.public_key(), ca_key, ca=True)

    client_key = ec.generate_private_key(ec.SECP256R1())
    client_cert = _cert("device-1", "mqttcli test CA", client_key.public_key(), ca_key, ca=False)

    other_key = ec.generate_private_key(ec.SECP256R1())

    paths = SimpleNamespace(
        ca=d / "ca.pem",
        cert=d / "device.crt",
        key=d / "device.key",
        other_key=d / "other.key",
        encrypted_key=d / "device-encrypted.key",
    )
    paths.ca.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    paths.cert.write_bytes(client_cert.public_bytes(serialization.Encoding.PEM))
    paths.key.write_bytes(_key_pem(client_key))
    paths.other_key.write_bytes(_key_pem(other_key))
    paths.encrypted_key.write_bytes(_key_pem(client_key, b"secret"))
    return paths
