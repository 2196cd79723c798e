"""
TLS material loading for broker connections.

Turns CA / client certificate / private key paths into a ready
``ssl.SSLContext``. Only local file reads happen here, never network I/O,
so bad material is reported before any connection attempt.
"""

from __future__ import annotations

import logging
import re
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from mqttcli.errors import CAError, IdentityError
from mqttcli.mqtt_topics import SECURE_SCHEMES

logger = logging.getLogger(__name__)

MINIMUM_TLS_VERSION = ssl.TLSVersion.TLSv1_2

_PEM_CERT_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----\s.+?\s-----END CERTIFICATE-----",
    re.DOTALL,
)


def requires_tls(scheme: str, has_ca: bool, has_cert: bool, has_key: bool) -> bool:
    """TLS is attached for a secure scheme or whenever any security file is given."""
    return (scheme or "").lower() in SECURE_SCHEMES or has_ca or has_cert or has_key


@dataclass(frozen=True, slots=True)
class IdentityPair:
    cert_file: str
    key_file: str


@dataclass(frozen=True, slots=True)
class TransportSecurityConfig:
    """
    TLS settings for one connection attempt.

    ca_file is None when the platform's default roots are trusted; otherwise
    the certificates from ca_file replace them.
    """

    ca_file: Optional[str]
    ca_count: int
    identity: Optional[IdentityPair]
    minimum_version: ssl.TLSVersion
    insecure: bool
    context: ssl.SSLContext = field(compare=False, repr=False)

    @property
    def uses_system_trust(self) -> bool:
        return self.ca_file is None


def _refuse_passphrase() -> bytes:
    # Stops OpenSSL from prompting on the terminal for encrypted keys.
    raise IdentityError("encrypted private keys are not supported")


def _load_ca(context: ssl.SSLContext, ca_file: str) -> int:
    try:
        raw = Path(ca_file).read_bytes()
    except OSError as exc:
        raise CAError(f"cannot read CA file {ca_file!r}: {exc}") from exc

    blocks = _PEM_CERT_RE.findall(raw.decode("latin-1"))
    if not blocks:
        raise CAError(f"no PEM certificates found in CA file {ca_file!r}")

    try:
        context.load_verify_locations(cadata="\n".join(blocks))
    except (ssl.SSLError, ValueError) as exc:
        raise CAError(f"failed to parse CA certificate(s) in {ca_file!r}: {exc}") from exc
    return len(blocks)


def _load_identity(context: ssl.SSLContext, cert_file: str, key_file: str) -> IdentityPair:
    try:
        context.load_cert_chain(cert_file, key_file, password=_refuse_passphrase)
    except IdentityError:
        raise
    except (OSError, ssl.SSLError) as exc:
        raise IdentityError(
            f"failed to load client certificate {cert_file!r} with key {key_file!r}: {exc}"
        ) from exc
    return IdentityPair(cert_file=cert_file, key_file=key_file)


def load_tls_config(
    ca_file: str = "",
    cert_file: str = "",
    key_file: str = "",
    insecure: bool = False,
) -> TransportSecurityConfig:
    """
    Build the TLS configuration from file inputs.

    Raises:
        CAError: ca_file given but unreadable or without a parseable PEM certificate.
        IdentityError: only one of cert_file/key_file given, or the pair does not load.
    """
    if bool(cert_file) != bool(key_file):
        missing = "key_file" if cert_file else "cert_file"
        raise IdentityError(
            f"client certificate and private key must be given together; {missing} is missing"
        )

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = MINIMUM_TLS_VERSION

    ca_count = 0
    if ca_file:
        ca_count = _load_ca(context, ca_file)
        logger.debug("Loaded %d CA certificate(s) from %s", ca_count, ca_file)
    else:
        context.load_default_certs(ssl.Purpose.SERVER_AUTH)

    identity = None
    if cert_file and key_file:
        identity = _load_identity(context, cert_file, key_file)
        logger.debug("Loaded client identity from %s", cert_file)

    if insecure:
        # Order matters: check_hostname must be off before CERT_NONE is allowed.
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        logger.warning(
            "TLS server certificate verification is DISABLED (insecure); "
            "do not use this in production"
        )

    return TransportSecurityConfig(
        ca_file=ca_file or None,
        ca_count=ca_count,
        identity=identity,
        minimum_version=MINIMUM_TLS_VERSION,
        insecure=insecure,
        context=context,
    )
