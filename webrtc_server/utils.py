"""
Utility functions for the HTTPS server.
"""

import datetime
import logging
import os
from pathlib import Path
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

logger = logging.getLogger(__name__)


def get_package_dir() -> Path:
    """
    Get the directory where the webrtc_server package is installed.
    This allows us to find package files regardless of current working directory.
    """
    return Path(__file__).parent


def get_project_root() -> Path:
    """
    Get the project root directory (parent of the webrtc_server package).
    This is where config files, the identity bundle and web-ui should be located.
    """
    return get_package_dir().parent


def get_absolute_path(relative_path: Union[str, Path]) -> Path:
    """
    Convert a relative path to an absolute path relative to the project root.

    Args:
        relative_path: Path relative to project root (absolute paths are returned unchanged)

    Returns:
        Absolute Path object
    """
    return get_project_root() / relative_path


def generate_identity_bundle(
    bundle_path: Union[str, Path] = "server.p12",
    passphrase: str = "123456",
    common_name: str = "localhost",
    days: int = 365,
) -> Path:
    """
    Generate a self-signed certificate and private key, packed as a PKCS#12 bundle.

    Args:
        bundle_path: Where to write the bundle (relative to project root)
        passphrase: Passphrase protecting the bundle
        common_name: Subject CN of the certificate
        days: Validity period

    Returns:
        Absolute path of the written bundle
    """
    bundle_abs_path = get_absolute_path(bundle_path)

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "WebRTC HTTPS Server"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )

    encryption = (
        serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
        if passphrase
        else serialization.NoEncryption()
    )
    data = pkcs12.serialize_key_and_certificates(
        name=common_name.encode("utf-8"), key=key, cert=cert, cas=None, encryption_algorithm=encryption
    )

    bundle_abs_path.parent.mkdir(parents=True, exist_ok=True)
    bundle_abs_path.write_bytes(data)
    # Readable by owner only, the bundle holds the private key
    os.chmod(bundle_abs_path, 0o600)

    logger.info(f"Identity bundle generated: {bundle_abs_path}")
    return bundle_abs_path


def ensure_identity_bundle(bundle_path: Union[str, Path] = "server.p12", passphrase: str = "123456") -> bool:
    """
    Ensure the identity bundle exists, generating a self-signed one if necessary.

    Returns:
        True if the bundle is available, False if generation failed
    """
    if get_absolute_path(bundle_path).exists():
        logger.info(f"Identity bundle already exists: {get_absolute_path(bundle_path)}")
        return True

    logger.info("Identity bundle not found, generating a self-signed certificate...")
    try:
        generate_identity_bundle(bundle_path, passphrase)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to generate identity bundle: {e}")
        logger.error("Manual generation may be required:")
        logger.error(
            "openssl req -x509 -newkey rsa:2048 -keyout key.pem -out cert.pem -sha256 -days 365 -nodes "
            '-subj "/CN=localhost" && openssl pkcs12 -export -inkey key.pem -in cert.pem -out server.p12'
        )
        return False

    return True
