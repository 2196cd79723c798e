"""
MQTT connection lifecycle for mqttcli.

Opens one broker session (plain, TLS or mutual TLS), blocks until CONNACK,
subscribes to a single topic filter and blocks until SUBACK, then hands
deliveries to a MessageHandler on the paho network thread until disconnect().
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

import paho.mqtt.client as mqtt

from mqttcli.config import ConnectionSpec
from mqttcli.core.handlers import ConnectionLostHandler, MessageHandler
from mqttcli.errors import ConnectError, SubscribeError
from mqttcli.mqtt_topics import (
    BrokerEndpoint,
    BrokerURLError,
    TopicFilterError,
    parse_broker_url,
    validate_topic_filter,
)
from mqttcli.tls import TransportSecurityConfig, load_tls_config, requires_tls

logger = logging.getLogger(__name__)

# Time the transport gets to flush DISCONNECT before the loop is stopped
DISCONNECT_GRACE_S = 0.25

VALID_QOS = (0, 1, 2)


@dataclass(frozen=True, slots=True)
class Subscription:
    topic: str
    requested_qos: int
    granted_qos: int


class BrokerConnection:
    """
    Single-owner broker session.

    connect() and subscribe() block the caller; paho callbacks run on the
    loop_start() thread and only touch the state guarded by self._cond and
    self._delivery_lock. ConnectionSpec and the TLS config are never mutated.
    """

    def __init__(
        self,
        spec: ConnectionSpec,
        security: Optional[TransportSecurityConfig] = None,
        *,
        on_connection_lost: Optional[ConnectionLostHandler] = None,
        keepalive: int = 60,
        connect_timeout_s: float = 30.0,
        subscribe_timeout_s: float = 30.0,
    ) -> None:
        self.spec = spec
        self.security = security
        self.keepalive = keepalive
        self.connect_timeout_s = connect_timeout_s
        self.subscribe_timeout_s = subscribe_timeout_s

        self._on_connection_lost = on_connection_lost
        self._client: Optional[mqtt.Client] = None

        self._cond = threading.Condition()
        self._established = False
        self._closing = False
        self._suback: dict[int, list[Any]] = {}

        self._connack = threading.Event()
        self._connect_failure: Optional[Any] = None
        self._disconnected = threading.Event()

        self._delivery_lock = threading.Lock()
        self._delivery_open = True
        self._handler: Optional[MessageHandler] = None
        self.subscription: Optional[Subscription] = None

    # ---- connect -------------------------------------------------------

    def _resolve_security(self, scheme: str) -> Optional[TransportSecurityConfig]:
        spec = self.spec
        if not requires_tls(scheme, bool(spec.ca_file), bool(spec.cert_file), bool(spec.key_file)):
            return None
        if self.security is None:
            # CAError / IdentityError propagate before any socket is opened
            self.security = load_tls_config(
                spec.ca_file, spec.cert_file, spec.key_file, spec.insecure
            )
        return self.security

    def _build_client(self, endpoint: BrokerEndpoint, security: Optional[TransportSecurityConfig]) -> mqtt.Client:
        spec = self.spec
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=spec.client_id,
            clean_session=True,
            protocol=mqtt.MQTTv311,
            transport=endpoint.transport,
        )
        if endpoint.transport == "websockets":
            client.ws_set_options(path=endpoint.ws_path)

        if spec.username:
            client.username_pw_set(spec.username, spec.password or None)
        elif spec.password:
            logger.warning("Password given without username; MQTT 3.1.1 cannot send it, ignoring")

        if security is not None:
            client.tls_set_context(security.context)
            if security.insecure:
                client.tls_insecure_set(True)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        return client

    def connect(self) -> None:
        """
        Open the session and block until the broker answers CONNACK.

        Raises:
            CAError, IdentityError: TLS material is bad (no network I/O attempted).
            ConnectError: invalid URL, socket/TLS failure, refusal or timeout.
        """
        if self._client is not None:
            raise ConnectError("connection already open")

        url = self.spec.broker_url
        try:
            endpoint = parse_broker_url(url)
        except BrokerURLError as exc:
            raise ConnectError(f"invalid broker URL: {exc}") from exc

        security = self._resolve_security(endpoint.scheme)
        client = self._build_client(endpoint, security)

        logger.debug(
            "Connecting to %s:%d transport=%s tls=%s",
            endpoint.host,
            endpoint.port,
            endpoint.transport,
            security is not None,
        )
        try:
            client.connect(endpoint.host, endpoint.port, keepalive=self.keepalive)
        except (OSError, ValueError) as exc:
            raise ConnectError(f"failed to connect to {url}: {exc}") from exc

        self._client = client
        client.loop_start()

        if not self._connack.wait(timeout=self.connect_timeout_s):
            self._teardown(grace_s=0.0)
            raise ConnectError(
                f"timed out after {self.connect_timeout_s:.1f}s waiting for CONNACK from {url}"
            )

        with self._cond:
            failure = self._connect_failure
        if failure is not None:
            self._teardown(grace_s=0.0)
            raise ConnectError(f"broker {url} refused connection: {failure}", reason_code=failure)

        logger.info("Connected to %s as clientID='%s'", url, self.spec.client_id)

    # ---- subscribe -----------------------------------------------------

    def subscribe(self, topic: str, qos: int, handler: MessageHandler) -> Subscription:
        """
        Subscribe to one topic filter and block until SUBACK.

        The handler is invoked on the network thread once per matching
        message, in the order the transport delivers them.
        """
        if qos not in VALID_QOS:
            raise SubscribeError(f"invalid QoS {qos!r}; must be 0, 1 or 2")
        try:
            validate_topic_filter(topic)
        except TopicFilterError as exc:
            raise SubscribeError(str(exc)) from exc

        client = self._client
        with self._cond:
            established = self._established
        if client is None or not established:
            raise SubscribeError(f"cannot subscribe to '{topic}': not connected")

        self._handler = handler
        client.message_callback_add(topic, self._on_message)

        try:
            result, mid = client.subscribe(topic, qos=qos)
        except ValueError as exc:
            self._drop_handler(topic)
            raise SubscribeError(f"subscribe request for '{topic}' rejected: {exc}") from exc
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._drop_handler(topic)
            raise SubscribeError(
                f"subscribe request for '{topic}' failed: {mqtt.error_string(result)}"
            )

        try:
            reason_codes = self._wait_for_suback(mid, topic)
        except SubscribeError:
            self._drop_handler(topic)
            raise

        granted = reason_codes[0] if reason_codes else None
        if granted is None or granted.is_failure:
            self._drop_handler(topic)
            raise SubscribeError(
                f"broker rejected subscription to '{topic}': {granted}", reason_code=granted
            )

        granted_qos = int(granted.value)
        if granted_qos < qos:
            logger.warning("Broker downgraded QoS for '%s': requested=%d granted=%d", topic, qos, granted_qos)

        self.subscription = Subscription(topic=topic, requested_qos=qos, granted_qos=granted_qos)
        logger.info("Subscribed to topic '%s' with QoS=%d", topic, qos)
        return self.subscription

    def _wait_for_suback(self, mid: int, topic: str) -> list[Any]:
        deadline = time.monotonic() + self.subscribe_timeout_s
        with self._cond:
            while mid not in self._suback:
                if not self._established:
                    raise SubscribeError(f"connection lost while subscribing to '{topic}'")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise SubscribeError(
                        f"timed out after {self.subscribe_timeout_s:.1f}s waiting for SUBACK on '{topic}'"
                    )
                self._cond.wait(remaining)
            return self._suback.pop(mid)

    def _drop_handler(self, topic: str) -> None:
        if self._client is not None:
            self._client.message_callback_remove(topic)
        self._handler = None

    # ---- disconnect ----------------------------------------------------

    def close_delivery(self) -> None:
        """Stop handing messages to the handler; waits for an in-flight delivery."""
        with self._delivery_lock:
            self._delivery_open = False

    def _teardown(self, grace_s: float) -> None:
        client = self._client
        if client is None:
            return
        with self._cond:
            self._closing = True
        self.close_delivery()
        try:
            client.disconnect()
            if grace_s > 0 and not self._disconnected.wait(timeout=grace_s):
                logger.warning("Disconnect not confirmed within %.2fs; closing transport", grace_s)
        except Exception:
            logger.exception("Error disconnecting MQTT")
        finally:
            try:
                client.loop_stop()
            except Exception:
                logger.exception("Error stopping MQTT network loop")
            self._client = None

    def disconnect(self, grace_s: float = DISCONNECT_GRACE_S) -> None:
        """Orderly DISCONNECT with a bounded grace period. Never raises; idempotent."""
        if self._client is None:
            return
        self._teardown(grace_s)
        logger.info("MQTT disconnected")

    # ---- paho callbacks (network thread) -------------------------------

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        with self._cond:
            if reason_code.is_failure:
                logger.debug("CONNACK failure: %s", reason_code)
                self._connect_failure = reason_code
            else:
                self._established = True
            self._cond.notify_all()
        self._connack.set()

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any
    ) -> None:
        with self._cond:
            was_established = self._established
            closing = self._closing
            self._established = False
            if not self._connack.is_set():
                self._connect_failure = reason_code
            self._cond.notify_all()
        self._disconnected.set()
        self._connack.set()

        if closing or not was_established:
            return

        # No reconnect: stop the loop thread from inside itself (does not join).
        client.loop_stop()
        if self._on_connection_lost is None:
            return
        try:
            self._on_connection_lost.on_connection_lost(reason_code)
        except Exception:
            logger.exception("Connection-loss observer failed")

    def _on_subscribe(
        self, client: mqtt.Client, userdata: Any, mid: int, reason_code_list: list[Any], properties: Any
    ) -> None:
        with self._cond:
            self._suback[mid] = list(reason_code_list)
            self._cond.notify_all()

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        with self._delivery_lock:
            handler = self._handler
            if not self._delivery_open or handler is None:
                return
            try:
                handler.on_message(msg.topic, msg.qos, msg.payload)
            except Exception:
                logger.exception("Message handler failed topic=%s", msg.topic)
