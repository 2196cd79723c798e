"""
Shutdown coordination.

RUNNING -> SHUTDOWN_REQUESTED -> DISCONNECTING -> EXITED

Only SIGINT and SIGTERM move the coordinator out of RUNNING. The
disconnect is awaited before shutdown() returns, so no delivery can run
after control reaches the process exit path.
"""

from __future__ import annotations

import enum
import logging
import signal
import threading
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownState(enum.Enum):
    RUNNING = "running"
    SHUTDOWN_REQUESTED = "shutdown_requested"
    DISCONNECTING = "disconnecting"
    EXITED = "exited"


class Disconnectable(Protocol):
    def close_delivery(self) -> None:
        ...

    def disconnect(self, grace_s: float = ...) -> None:
        ...


class ShutdownCoordinator:
    def __init__(self, connection: Disconnectable, *, grace_s: float = 0.25) -> None:
        self.connection = connection
        self.grace_s = grace_s
        self._state = ShutdownState.RUNNING
        self._lock = threading.Lock()
        self._requested = threading.Event()
        self._previous_handlers: dict[int, Any] = {}

    @property
    def state(self) -> ShutdownState:
        with self._lock:
            return self._state

    def _transition(self, expected: ShutdownState, new: ShutdownState) -> bool:
        with self._lock:
            if self._state is not expected:
                return False
            self._state = new
        logger.debug("Shutdown state %s -> %s", expected.value, new.value)
        return True

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to request_shutdown(). Must run on the main thread."""
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for signum, previous in self._previous_handlers.items():
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers.clear()

    def _handle_signal(self, signum: int, frame) -> None:  # frame is unused, keep signature
        self.request_shutdown(signum)

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        if self._transition(ShutdownState.RUNNING, ShutdownState.SHUTDOWN_REQUESTED):
            logger.info("Received signal %s; requesting shutdown", signum)
            self._requested.set()
        else:
            logger.debug("Signal %s ignored; already %s", signum, self.state.value)

    def is_requested(self) -> bool:
        return self._requested.is_set()

    def wait(self, poll_s: float = 0.5) -> None:
        """Block until a termination signal arrives."""
        while not self._requested.wait(timeout=poll_s):
            pass

    def shutdown(self) -> None:
        """
        Close delivery, disconnect within the grace period and reach EXITED.
        Never raises.

        The delivery gate is closed before the state becomes DISCONNECTING,
        so no message callback runs once that state is observable.
        """
        state = self.state
        if state is not ShutdownState.SHUTDOWN_REQUESTED:
            logger.warning("shutdown() called in state %s", state.value)
            return

        try:
            self.connection.close_delivery()
        except Exception:
            logger.exception("Error closing message delivery")
        self._transition(ShutdownState.SHUTDOWN_REQUESTED, ShutdownState.DISCONNECTING)

        logger.info("Shutting down...")
        try:
            self.connection.disconnect(self.grace_s)
        except Exception:
            logger.exception("Error disconnecting MQTT")
        finally:
            self._transition(ShutdownState.DISCONNECTING, ShutdownState.EXITED)
            self.restore_signal_handlers()
        logger.info("Exiting.")
