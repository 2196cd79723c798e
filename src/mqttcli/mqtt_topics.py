"""
Broker endpoint and topic filter helpers.

Broker URLs follow the Eclipse Paho convention: ``scheme://host:port``.
  tcp://, mqtt://                    plain TCP (1883)
  ssl://, tls://, mqtts://, tcps://  TLS (8883)
  ws://                              websocket (80)
  wss://                             websocket over TLS (443)
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

SECURE_SCHEMES = frozenset({"ssl", "tls", "mqtts", "tcps", "wss"})

_DEFAULT_PORTS = {
    "tcp": 1883,
    "mqtt": 1883,
    "ssl": 8883,
    "tls": 8883,
    "mqtts": 8883,
    "tcps": 8883,
    "ws": 80,
    "wss": 443,
}

_WEBSOCKET_SCHEMES = frozenset({"ws", "wss"})
_DEFAULT_WS_PATH = "/mqtt"

# MQTT strings are length-prefixed with a 16-bit integer
_MAX_TOPIC_BYTES = 65535


class BrokerURLError(ValueError):
    """Raised when a broker URL cannot be turned into an endpoint."""


class TopicFilterError(ValueError):
    """Raised when a topic filter breaks MQTT wildcard rules."""


@dataclass(frozen=True, slots=True)
class BrokerEndpoint:
    scheme: str
    host: str
    port: int
    path: str = ""

    @property
    def secure(self) -> bool:
        return self.scheme in SECURE_SCHEMES

    @property
    def transport(self) -> str:
        return "websockets" if self.scheme in _WEBSOCKET_SCHEMES else "tcp"

    @property
    def ws_path(self) -> str:
        return self.path or _DEFAULT_WS_PATH


def parse_broker_url(url: str) -> BrokerEndpoint:
    if not isinstance(url, str) or not url.strip():
        raise BrokerURLError("broker URL must be a non-empty string")

    raw = url.strip()
    if "://" not in raw:
        raw = f"tcp://{raw}"

    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise BrokerURLError(
            f"unsupported broker URL scheme '{scheme}' in {url!r}; "
            f"allowed: {', '.join(sorted(_DEFAULT_PORTS))}"
        )

    host = parts.hostname
    if not host:
        raise BrokerURLError(f"broker URL {url!r} has no host")

    try:
        port = parts.port
    except ValueError as exc:
        raise BrokerURLError(f"broker URL {url!r} has an invalid port") from exc
    if port is None:
        port = _DEFAULT_PORTS[scheme]
    if not (1 <= port <= 65535):
        raise BrokerURLError(f"broker port out of range: {port}")

    return BrokerEndpoint(scheme=scheme, host=host, port=port, path=parts.path)


def validate_topic_filter(topic: str) -> str:
    """
    Check a subscription filter against the MQTT 3.1.1 rules.

    ``#`` must occupy the whole last level, ``+`` a whole level.
    Returns the filter unchanged.
    """
    if not isinstance(topic, str) or not topic:
        raise TopicFilterError("topic filter must be a non-empty string")
    if "\x00" in topic:
        raise TopicFilterError("topic filter must not contain NUL characters")
    if len(topic.encode("utf-8")) > _MAX_TOPIC_BYTES:
        raise TopicFilterError(f"topic filter longer than {_MAX_TOPIC_BYTES} bytes")

    levels = topic.split("/")
    for i, level in enumerate(levels):
        if "#" in level:
            if level != "#" or i != len(levels) - 1:
                raise TopicFilterError(
                    f"topic filter '{topic}' is invalid; '#' must be the whole last level"
                )
        if "+" in level and level != "+":
            raise TopicFilterError(
                f"topic filter '{topic}' is invalid; '+' must occupy a whole level"
            )
    return topic
