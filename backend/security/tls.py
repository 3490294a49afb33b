"""
Security module: pinned TLS trust material.

Every pairing uses the same certificate/key pair. The server presents it and
the client trusts exactly that certificate, nothing dynamic, no revocation.
"""

import datetime
import ipaddress
import logging
import os
import ssl
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from config import APP_ID, CERT_FILE, KEY_FILE

logger = logging.getLogger(__name__)

# Validity of a generated certificate
CERT_VALIDITY_DAYS = 3650


def generate_certificate(common_name: str = APP_ID) -> tuple[bytes, bytes]:
    """
    Create a self-signed EC P-256 certificate.

    Returns:
        (cert_pem, key_pem)
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=CERT_VALIDITY_DAYS))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.SubjectAlternativeName([
                x509.DNSName("localhost"),
                x509.DNSName(common_name),
                x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
            ]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def ensure_certificate(
    cert_file: Path = CERT_FILE, key_file: Path = KEY_FILE
) -> tuple[Path, Path]:
    """Load the pinned pair, generating it on first run."""
    cert_file, key_file = Path(cert_file), Path(key_file)
    if cert_file.exists() and key_file.exists():
        return cert_file, key_file

    logger.info(f"Generating TLS certificate at {cert_file}")
    cert_pem, key_pem = generate_certificate()
    cert_file.parent.mkdir(parents=True, exist_ok=True)
    key_file.parent.mkdir(parents=True, exist_ok=True)
    cert_file.write_bytes(cert_pem)
    key_file.write_bytes(key_pem)
    try:
        os.chmod(key_file, 0o600)
    except OSError as e:
        logger.debug(f"Could not restrict key permissions: {e}")
    return cert_file, key_file


def server_context(cert_file: Path, key_file: Path) -> ssl.SSLContext:
    """TLS context for the listening side."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_cert_chain(certfile=str(cert_file), keyfile=str(key_file))
    return context


def client_context(cert_file: Path) -> ssl.SSLContext:
    """
    TLS context for the dialing side.

    Peers are addressed by raw LAN IPs, so the hostname is not checked; the
    chain must still end in the pinned certificate.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = False
    context.verify_mode = ssl.CERT_REQUIRED
    context.load_verify_locations(cafile=str(cert_file))
    return context
