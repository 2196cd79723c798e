"""
Fatal error taxonomy for the connection lifecycle.

Every error here terminates the process with a non-zero exit code; none is
retried. The underlying cause is chained via ``raise ... from exc``.
"""

from __future__ import annotations

from typing import Any, Optional


class MqttCliError(RuntimeError):
    """Base class for fatal lifecycle errors."""


class CAError(MqttCliError):
    """CA file unreadable or holding no usable PEM certificate."""


class IdentityError(MqttCliError):
    """Client certificate/key pair missing half, unreadable or mismatched."""


class ConnectError(MqttCliError):
    """Broker handshake failed (network, TLS, auth refusal or timeout)."""

    def __init__(self, message: str, *, reason_code: Optional[Any] = None) -> None:
        super().__init__(message)
        self.reason_code = reason_code


class SubscribeError(MqttCliError):
    """Subscribe rejected by the broker or interrupted before SUBACK."""

    def __init__(self, message: str, *, reason_code: Optional[Any] = None) -> None:
        super().__init__(message)
        self.reason_code = reason_code
