"""
TLS identity loading.

The server presents a certificate and private key decoded from a
password-protected PKCS#12 bundle. The identity is decoded once per server run
and turned into an ``ssl.SSLContext`` for the listener.
"""

import logging
import secrets
import ssl
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from ..errors import ConfigError, IdentityDecodeError, IdentityNotFound

logger = logging.getLogger(__name__)

# Protocol versions the server accepts as a floor
ALLOWED_MIN_VERSIONS = ("TLSv1_2", "TLSv1_3")


def parse_min_version(name: str) -> ssl.TLSVersion:
    """Map a config string such as ``TLSv1_2`` to an ``ssl.TLSVersion``."""
    if name not in ALLOWED_MIN_VERSIONS:
        raise ConfigError(f"Unsupported minimum TLS version {name!r}, expected one of {ALLOWED_MIN_VERSIONS}")
    return ssl.TLSVersion[name]


@dataclass(frozen=True)
class TLSIdentity:
    """Certificate chain and private key presented during the TLS handshake."""

    certificate: x509.Certificate
    private_key: object
    chain: Tuple[x509.Certificate, ...] = ()

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    def server_context(self, min_version: str = "TLSv1_2") -> ssl.SSLContext:
        """Build a server-side SSL context presenting this identity.

        ``ssl`` can only load certificates from files, so the PEM material is
        written to a private temporary directory that is removed before
        returning. The key is stored encrypted with a one-off password.
        """
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = parse_min_version(min_version)
        # Server authentication only
        context.verify_mode = ssl.CERT_NONE

        token = secrets.token_hex(32).encode("ascii")
        cert_pem = self.certificate.public_bytes(serialization.Encoding.PEM)
        for extra in self.chain:
            cert_pem += extra.public_bytes(serialization.Encoding.PEM)
        key_pem = self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(token),
        )

        with tempfile.TemporaryDirectory(prefix="webrtc-server-") as tmp:
            cert_path = Path(tmp) / "cert.pem"
            key_path = Path(tmp) / "key.pem"
            cert_path.write_bytes(cert_pem)
            key_path.write_bytes(key_pem)
            context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path), password=token)

        return context


def load_identity(bundle_path: Union[str, Path], passphrase: str) -> TLSIdentity:
    """
    Decode a PKCS#12 bundle into a TLS identity.

    Args:
        bundle_path: Absolute path of the bundle
        passphrase: Passphrase protecting the bundle (empty for an unprotected bundle)

    Returns:
        The decoded identity

    Raises:
        IdentityNotFound: the bundle file does not exist
        IdentityDecodeError: wrong passphrase, malformed data, or missing key/certificate
    """
    path = Path(bundle_path)
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        raise IdentityNotFound(f"Identity bundle not found: {path}", path=path) from None
    except OSError as e:
        raise IdentityNotFound(f"Identity bundle unreadable: {path}: {e}", path=path) from e

    password = passphrase.encode("utf-8") if passphrase else None
    try:
        private_key, certificate, additional = pkcs12.load_key_and_certificates(data, password)
    except (ValueError, TypeError) as e:
        raise IdentityDecodeError(f"Could not decode identity bundle {path.name}: {e}", path=path) from e

    if certificate is None:
        raise IdentityDecodeError(f"Identity bundle {path.name} contains no certificate", path=path)
    if private_key is None:
        raise IdentityDecodeError(f"Identity bundle {path.name} contains no private key", path=path)

    identity = TLSIdentity(certificate=certificate, private_key=private_key, chain=tuple(additional or ()))
    logger.debug(f"Loaded identity {identity.subject} from {path}")
    return identity
