# certs.py
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from consts import SECRET_CA_KEY, SECRET_CERT_KEY, SECRET_KEY_KEY

log = logging.getLogger(__name__)

CA_VALIDITY = timedelta(days=365 * 10)
CERT_VALIDITY = timedelta(days=365)
# re-issue once less than this much validity is left
RENEW_BEFORE = timedelta(days=30)
# upper bound for commonName (RFC 5280 ub-common-name)
COMMON_NAME_MAX = 64


@dataclass(frozen=True)
class CertificateAuthority:
    cert_pem: str
    key_pem: str


def _key_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def _cert_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


def b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def unb64(data: Optional[str]) -> str:
    if not data:
        return ""
    return base64.b64decode(data).decode("utf-8")


def generate_ca(common_name: str = "Kong Gateway Operator CA", now: Optional[datetime] = None) -> CertificateAuthority:
    now = now or datetime.now(timezone.utc)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Kong"),
    ])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + CA_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_cert_sign=True,
                crl_sign=True,
                key_encipherment=False,
                key_agreement=False,
                content_commitment=False,
                data_encipherment=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )
    return CertificateAuthority(cert_pem=_cert_pem(cert), key_pem=_key_pem(key))


def _common_name(name: str) -> str:
    if len(name) <= COMMON_NAME_MAX:
        return name
    # SANs carry the full names; the subject keeps the first DNS label
    return name.split(".", 1)[0][:COMMON_NAME_MAX]


def issue_certificate(
    ca: CertificateAuthority,
    common_name: str,
    dns_names: List[str],
    client: bool = False,
    now: Optional[datetime] = None,
) -> Tuple[str, str]:
    """Sign a leaf certificate; returns (cert_pem, key_pem)."""
    now = now or datetime.now(timezone.utc)
    ca_cert = x509.load_pem_x509_certificate(ca.cert_pem.encode())
    ca_key = serialization.load_pem_private_key(ca.key_pem.encode(), password=None)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    usage = [ExtendedKeyUsageOID.CLIENT_AUTH] if client else [ExtendedKeyUsageOID.SERVER_AUTH]
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, _common_name(common_name))]))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + CERT_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage(usage), critical=False)
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]), critical=False
        )
    cert = builder.sign(ca_key, hashes.SHA256())
    return _cert_pem(cert), _key_pem(key)


def certificate_current(
    data: Optional[dict],
    ca: CertificateAuthority,
    dns_names: List[str],
    now: Optional[datetime] = None,
) -> bool:
    """True when Secret ``data`` holds a certificate from ``ca`` that covers
    ``dns_names`` and is not due for renewal."""
    data = data or {}
    if not data.get(SECRET_CERT_KEY) or not data.get(SECRET_KEY_KEY):
        return False
    if unb64(data.get(SECRET_CA_KEY)) != ca.cert_pem:
        return False
    now = now or datetime.now(timezone.utc)
    try:
        cert = x509.load_pem_x509_certificate(unb64(data[SECRET_CERT_KEY]).encode())
    except ValueError:
        return False
    if cert.not_valid_after_utc - now < RENEW_BEFORE:
        return False
    if not dns_names:
        return True
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return False
    return set(dns_names) <= set(san.get_values_for_type(x509.DNSName))


def certificate_data(
    ca: CertificateAuthority,
    common_name: str,
    dns_names: List[str],
    existing: Optional[dict] = None,
    client: bool = False,
) -> dict:
    """Secret ``data`` for a leaf certificate, reusing ``existing`` while it is current."""
    if certificate_current(existing, ca, dns_names):
        return {k: existing[k] for k in (SECRET_CA_KEY, SECRET_CERT_KEY, SECRET_KEY_KEY)}
    cert_pem, key_pem = issue_certificate(ca, common_name, dns_names, client=client)
    return {
        SECRET_CA_KEY: b64(ca.cert_pem),
        SECRET_CERT_KEY: b64(cert_pem),
        SECRET_KEY_KEY: b64(key_pem),
    }


def ensure_cluster_ca(cluster, namespace: str, name: str) -> CertificateAuthority:
    """Load the operator CA Secret, creating it on first use."""
    secret = cluster.get("Secret", namespace, name)
    if secret is not None:
        data = secret.get("data", {}) or {}
        return CertificateAuthority(cert_pem=unb64(data.get(SECRET_CERT_KEY)), key_pem=unb64(data.get(SECRET_KEY_KEY)))

    ca = generate_ca()
    cluster.create({
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "kubernetes.io/tls",
        "metadata": {"name": name, "namespace": namespace},
        "data": {SECRET_CERT_KEY: b64(ca.cert_pem), SECRET_KEY_KEY: b64(ca.key_pem)},
    })
    log.info("[certs] created cluster CA secret %s/%s", namespace, name)
    return ca
