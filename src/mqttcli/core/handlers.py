"""
Event adapters invoked from the paho network thread.

Both adapters capture their display flags by value at construction and never
touch the connection or its configuration. Deliveries are printed to stdout,
status and errors stay on the logging stream (stderr).
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional, TextIO

logger = logging.getLogger(__name__)


class MessageHandler(ABC):
    @abstractmethod
    def on_message(self, topic: str, qos: int, payload: bytes) -> None:
        """Called once per delivered message, in transport order."""
        raise NotImplementedError


class ConnectionLostHandler(ABC):
    @abstractmethod
    def on_connection_lost(self, reason: Any) -> None:
        """Called when an established session drops unexpectedly. Must not block."""
        raise NotImplementedError


def format_payload(payload: bytes) -> str:
    return payload.decode("utf-8", errors="backslashreplace")


class MessagePrinter(MessageHandler):
    """Prints one line per delivery to stdout unless quiet."""

    def __init__(self, quiet: bool = False, stream: Optional[TextIO] = None) -> None:
        self.quiet = quiet
        # None means sys.stdout at call time
        self.stream = stream
        self._lock = threading.Lock()
        self._received = 0

    @property
    def received(self) -> int:
        with self._lock:
            return self._received

    def on_message(self, topic: str, qos: int, payload: bytes) -> None:
        with self._lock:
            self._received += 1
        if self.quiet:
            return
        print(f"Topic={topic} QoS={qos} Payload={format_payload(payload)}", file=self.stream, flush=True)


class ConnectionLossReporter(ConnectionLostHandler):
    def __init__(self, print_errors: bool = False) -> None:
        self.print_errors = print_errors

    def on_connection_lost(self, reason: Any) -> None:
        if self.print_errors:
            logger.error("MQTT connection lost: %s", reason)
