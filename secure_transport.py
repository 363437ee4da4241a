#!/usr/bin/env python3
"""
secure_transport.py - TLS helpers for the remote shell
Context construction, certificate generation and fingerprinting
"""

import ipaddress
import logging
import os
import socket
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

DEFAULT_CERTFILE = "server.crt"
DEFAULT_KEYFILE = "server.key"
HANDSHAKE_TIMEOUT = 30
RSA_KEY_SIZE = 2048
CERT_VALIDITY_DAYS = 365

logger = logging.getLogger(__name__)


@dataclass
class TransportConfig:
    """Validated TLS configuration"""
    certfile: Optional[str] = DEFAULT_CERTFILE
    keyfile: Optional[str] = DEFAULT_KEYFILE
    cafile: Optional[str] = None
    check_hostname: bool = True
    server_hostname: Optional[str] = None
    handshake_timeout: float = field(default=HANDSHAKE_TIMEOUT)

    def __post_init__(self):
        if self.handshake_timeout is None or self.handshake_timeout <= 0:
            logger.warning("Invalid handshake timeout, falling back to %ss", HANDSHAKE_TIMEOUT)
            self.handshake_timeout = HANDSHAKE_TIMEOUT


def create_server_context(config: TransportConfig) -> ssl.SSLContext:
    """Server side context authenticated by the configured certificate"""
    if not config.certfile or not config.keyfile:
        raise ValueError("Server TLS requires both certfile and keyfile.")
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_cert_chain(certfile=config.certfile, keyfile=config.keyfile)
    return context


def create_client_context(config: TransportConfig) -> ssl.SSLContext:
    """Client side context; trusts `cafile` when given, the system store otherwise"""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    if config.cafile:
        context.load_verify_locations(cafile=config.cafile)
    else:
        context.load_default_certs(ssl.Purpose.SERVER_AUTH)
    context.check_hostname = config.check_hostname
    return context


def accept_tls(context: ssl.SSLContext, conn: socket.socket, timeout: float) -> ssl.SSLSocket:
    """Runs the server half of the handshake on an accepted socket"""
    conn.settimeout(timeout)
    tls_conn = context.wrap_socket(conn, server_side=True)
    tls_conn.settimeout(None)
    return tls_conn


def open_tls_connection(host: str, port: int, config: TransportConfig) -> ssl.SSLSocket:
    """Connects and completes the client handshake, returns a blocking TLS socket"""
    context = create_client_context(config)
    raw = socket.create_connection((host, port), timeout=config.handshake_timeout)
    try:
        tls_conn = context.wrap_socket(raw, server_hostname=config.server_hostname or host)
    except Exception:
        raw.close()
        raise
    tls_conn.settimeout(None)
    return tls_conn


def generate_self_signed_cert(
    cert_path: Path,
    key_path: Path,
    common_name: str = "localhost",
    hostnames: Iterable[str] = ("localhost",),
    ip_addresses: Iterable[str] = ("127.0.0.1",),
    days: int = CERT_VALIDITY_DAYS,
) -> Tuple[Path, Path]:
    """
    Writes a self-signed RSA certificate usable both as the server
    certificate and as the client's trust anchor.
    """
    cert_path = Path(cert_path)
    key_path = Path(key_path)

    key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    subject = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, u"Remote Shell"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    alt_names = [x509.DNSName(name) for name in hostnames]
    alt_names += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_addresses]

    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .sign(key, hashes.SHA256())
    )

    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_bytes(key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    if os.name == "posix":
        key_path.chmod(0o600)
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    logger.info(f"Wrote certificate {cert_path} and key {key_path}")
    return cert_path, key_path


def cert_fingerprint_sha256(cert_pem: bytes) -> str:
    cert = x509.load_pem_x509_certificate(cert_pem)
    return cert.fingerprint(hashes.SHA256()).hex()
