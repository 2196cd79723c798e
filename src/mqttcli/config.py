"""
mqttcli configuration.

Builds one immutable ConnectionSpec from up to three layers. A layer only
overrides the fields it explicitly sets.

Priority (lowest -> highest):
1) JSON config file (--config PATH or MQTTCLI_CONFIG)
2) MQTTCLI_* environment variables, after loading env files
   (~/.config/mqttcli/.env, ./.env) without overriding the process env
3) command-line flags (always win)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass, fields
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "MQTTCLI_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

# field -> (type, CLI flag used in error messages)
_FIELDS: dict[str, tuple[type, str]] = {
    "broker_url": (str, "--broker"),
    "client_id": (str, "--clientid"),
    "username": (str, "--username"),
    "password": (str, "--password"),
    "ca_file": (str, "--cafile"),
    "cert_file": (str, "--certfile"),
    "key_file": (str, "--keyfile"),
    "insecure": (bool, "--insecure"),
    "topic": (str, "--topic"),
    "qos": (int, "--qos"),
    "quiet": (bool, "--quiet"),
    "print_errors": (bool, "--verbose-errors"),
}

_REQUIRED = (
    ("broker_url", "Broker URL"),
    ("client_id", "Client ID"),
    ("topic", "Topic"),
)


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def package_version() -> str:
    try:
        return _pkg_version("mqttcli")
    except PackageNotFoundError:
        return "0.0.0+dev"


@dataclass(frozen=True, slots=True)
class ConnectionSpec:
    broker_url: str
    client_id: str
    topic: str
    username: str = ""
    password: str = ""
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    insecure: bool = False  # skip server cert validation; never in production
    qos: int = 0
    quiet: bool = False
    print_errors: bool = False

    def __repr__(self) -> str:
        shown = ", ".join(
            f"{f.name}={'***' if f.name == 'password' and self.password else getattr(self, f.name)!r}"
            for f in fields(self)
        )
        return f"ConnectionSpec({shown})"


def _env_paths() -> Iterable[Path]:
    # 1) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "mqttcli" / ".env"

    # 2) project override
    yield Path(".env")


def load_env_files() -> None:
    for p in _env_paths():
        if p.is_file():
            # never override variables already in the process environment
            load_dotenv(p, override=False)


def _check_type(name: str, value: Any, source: str) -> Any:
    expected, _ = _FIELDS[name]
    # bool is an int subclass; keep the two apart
    if expected is int and isinstance(value, bool):
        raise ConfigError(f"{source}: '{name}' must be an integer, got {value!r}")
    if not isinstance(value, expected):
        raise ConfigError(f"{source}: '{name}' must be {expected.__name__}, got {value!r}")
    return value


def load_json_config(path: str | Path) -> dict[str, Any]:
    """
    Read a JSON config file into a dict of known fields.

    Unknown keys are logged and skipped. Raises ConfigError on unreadable
    files, invalid JSON or wrongly typed values.
    """
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"could not load config file {str(p)!r}: {exc}") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid JSON in config file {str(p)!r}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {str(p)!r} must hold a JSON object")

    values: dict[str, Any] = {}
    for key, value in data.items():
        if key not in _FIELDS:
            logger.warning("Ignoring unknown config key %r in %s", key, p)
            continue
        if value is None:
            continue
        values[key] = _check_type(key, value, str(p))
    return values


def _parse_bool(key: str, raw: str) -> bool:
    v = raw.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Collect MQTTCLI_<FIELD> values that are present in the environment."""
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for name, (kind, _) in _FIELDS.items():
        key = ENV_PREFIX + name.upper()
        raw = env.get(key)
        # empty means unset, as for a missing variable
        if raw is None or not raw.strip():
            continue
        if kind is bool:
            values[name] = _parse_bool(key, raw)
        elif kind is int:
            values[name] = _parse_int(key, raw)
        else:
            values[name] = raw
    return values


def normalize_qos(qos: int) -> int:
    if qos in (0, 1, 2):
        return qos
    logger.warning("QoS %r is not 0, 1 or 2; using 0", qos)
    return 0


def resolve_spec(*layers: Mapping[str, Any]) -> ConnectionSpec:
    """
    Merge layers (lowest priority first) into a validated ConnectionSpec.

    None values and empty strings in a layer mean "not set".
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        for name, value in layer.items():
            if name not in _FIELDS:
                raise ConfigError(f"unknown configuration field: {name}")
            if value is None or value == "":
                continue
            merged[name] = value

    for name, label in _REQUIRED:
        if not merged.get(name):
            flag = _FIELDS[name][1]
            raise ConfigError(f"{label} is not set. Provide via {flag} or config file.")

    merged["qos"] = normalize_qos(merged.get("qos", 0))
    return ConnectionSpec(**merged)


def load_config(
    cli_values: Optional[Mapping[str, Any]] = None,
    *,
    config_path: Optional[str] = None,
    dotenv_enabled: bool = True,
) -> ConnectionSpec:
    """
    Build the ConnectionSpec from config file, env and CLI values.

    Returns an immutable ConnectionSpec. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        load_env_files()

    path = config_path or os.environ.get(ENV_PREFIX + "CONFIG")
    file_values = load_json_config(path) if path else {}
    return resolve_spec(file_values, env_overrides(), cli_values or {})
