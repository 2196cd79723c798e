"""
Logging setup for mqttcli.

Single log level for all loggers, from MQTTCLI_LOG_LEVEL (name or number),
default INFO. Log records go to stderr; received messages are printed to
stdout by MessagePrinter, not logged.
"""

from __future__ import annotations

import logging
import os
from typing import Mapping, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVEL_ENV = "MQTTCLI_LOG_LEVEL"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    level = getattr(logging, raw, logging.INFO)
    return level if isinstance(level, int) else logging.INFO


def level_from_env(environ: Optional[Mapping[str, str]] = None) -> int:
    env = os.environ if environ is None else environ
    return _parse_level(env.get(LOG_LEVEL_ENV, ""))


def configure_logging(level: Optional[int] = None) -> None:
    """Install the stderr handler once and apply the resolved level to the root logger."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logging.getLogger().setLevel(level if level is not None else level_from_env())
