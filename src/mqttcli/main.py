"""
mqttcli entrypoint.

CLI:
  mqttcli --broker tcp://localhost:1883 --clientid c1 --topic a/b [--qos 1]
  mqttcli --config /path/to/config.json [overrides...]

Exit codes: 0 clean shutdown after SIGINT/SIGTERM, 1 TLS/connect/subscribe
failure, 2 configuration error.
"""

from __future__ import annotations

import argparse
import logging
from typing import Any

from mqttcli.config import ConfigError, ConnectionSpec, load_config, package_version
from mqttcli.core.log_config import configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

_DESCRIPTION = """\
Subscribe to an MQTT topic using Eclipse Paho, with optional TLS or mutual TLS
for AWS IoT Core or other brokers. Configuration can come from a JSON file,
MQTTCLI_* environment variables and CLI flags; CLI flags override the rest.
"""

_EPILOG = """\
Examples:

  # Basic local broker usage:
  mqttcli --broker "tcp://localhost:1883" --clientid "testClient" \\
          --topic "my/test/topic" --qos 1

  # Using AWS IoT Core with mutual TLS:
  mqttcli --broker "ssl://<endpoint>.amazonaws.com:8883" \\
          --clientid "myThing" \\
          --cafile "AmazonRootCA1.pem" \\
          --certfile "deviceCert.crt" \\
          --keyfile "deviceKey.key" \\
          --topic "iot/gnss/myThing/data" --qos 1

  # JSON config usage:
  mqttcli --config /path/to/config.json
"""

# argparse dest -> ConnectionSpec field
_FLAG_FIELDS = {
    "broker": "broker_url",
    "clientid": "client_id",
    "username": "username",
    "password": "password",
    "topic": "topic",
    "cafile": "ca_file",
    "certfile": "cert_file",
    "keyfile": "key_file",
    "qos": "qos",
    "insecure": "insecure",
    "quiet": "quiet",
    "verbose_errors": "print_errors",
}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mqttcli",
        description=_DESCRIPTION,
        epilog=_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("--version", action="version", version=package_version())
    p.add_argument("--config", metavar="PATH", help="Path to JSON config file (optional). Loaded first.")
    p.add_argument("--broker", help="Broker URL, e.g. 'ssl://<endpoint>:8883' or 'tcp://localhost:1883'")
    p.add_argument("--clientid", help="MQTT client ID (must be unique per broker).")
    p.add_argument("--username", help="MQTT username if broker requires it.")
    p.add_argument("--password", help="MQTT password if broker requires it.")
    p.add_argument("--topic", help="MQTT topic to subscribe to.")
    p.add_argument("--cafile", help="Path to root CA certificate file (e.g. AmazonRootCA1.pem).")
    p.add_argument("--certfile", help="Path to client certificate file (x.509).")
    p.add_argument("--keyfile", help="Path to client private key file.")
    p.add_argument("--qos", type=int, help="QoS level for subscription (0, 1, or 2).")
    # store_true with default None so "not given" never overrides the config file
    p.add_argument("--insecure", action="store_true", default=None,
                   help="Skip TLS server cert verification (NOT recommended).")
    p.add_argument("--quiet", action="store_true", default=None,
                   help="If set, do not print incoming messages.")
    p.add_argument("--verbose-errors", action="store_true", default=None,
                   help="Print errors verbosely if set.")
    return p


def cli_values(args: argparse.Namespace) -> dict[str, Any]:
    return {field: getattr(args, dest) for dest, field in _FLAG_FIELDS.items()}


def run(spec: ConnectionSpec) -> int:
    """
    Connect, subscribe, block until SIGINT/SIGTERM, disconnect.
    Returns process exit code.
    """
    # Lazy imports keep --help/--version free of the paho import.
    from mqttcli.core.handlers import ConnectionLossReporter, MessagePrinter
    from mqttcli.core.shutdown import ShutdownCoordinator
    from mqttcli.errors import CAError, ConnectError, IdentityError, SubscribeError
    from mqttcli.mqtt_client import DISCONNECT_GRACE_S, BrokerConnection

    connection = BrokerConnection(
        spec,
        on_connection_lost=ConnectionLossReporter(spec.print_errors),
    )
    coordinator = ShutdownCoordinator(connection, grace_s=DISCONNECT_GRACE_S)
    coordinator.install_signal_handlers()
    try:
        try:
            connection.connect()
        except (CAError, IdentityError) as exc:
            logger.error("TLS configuration failed: %s", exc)
            return EXIT_FATAL
        except ConnectError as exc:
            logger.error("MQTT connection failed: %s", exc)
            return EXIT_FATAL

        try:
            connection.subscribe(spec.topic, spec.qos, MessagePrinter(spec.quiet))
        except SubscribeError as exc:
            logger.error("Failed to subscribe to topic '%s': %s", spec.topic, exc)
            connection.disconnect()
            return EXIT_FATAL

        coordinator.wait()
        coordinator.shutdown()
        return EXIT_OK
    finally:
        coordinator.restore_signal_handlers()


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging()

    try:
        spec = load_config(cli_values(args), config_path=args.config)
    except ConfigError as exc:
        logger.error("%s", exc)
        raise SystemExit(EXIT_CONFIG)

    logger.debug("Resolved configuration: %r", spec)
    raise SystemExit(run(spec))


if __name__ == "__main__":
    main()
