from __future__ import annotations

from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.x509.oid import NameOID

from certs import (
    certificate_current,
    certificate_data,
    ensure_cluster_ca,
    generate_ca,
    issue_certificate,
    unb64,
)
from consts import SECRET_CA_KEY, SECRET_CERT_KEY

DNS = ["admin.kong.svc", "*.admin.kong.svc"]


def test_issued_certificate_is_signed_by_ca() -> None:
    ca = generate_ca()
    cert_pem, _ = issue_certificate(ca, "admin.kong.svc", DNS)
    cert = x509.load_pem_x509_certificate(cert_pem.encode())
    ca_cert = x509.load_pem_x509_certificate(ca.cert_pem.encode())
    assert cert.issuer == ca_cert.subject
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert set(san.get_values_for_type(x509.DNSName)) == set(DNS)


def test_current_certificate_is_reused() -> None:
    ca = generate_ca()
    data = certificate_data(ca, "admin.kong.svc", DNS)
    assert unb64(data[SECRET_CA_KEY]) == ca.cert_pem
    assert certificate_data(ca, "admin.kong.svc", DNS, existing=data) == data


def test_certificate_is_reissued_for_new_names_or_ca() -> None:
    ca = generate_ca()
    data = certificate_data(ca, "admin.kong.svc", DNS)
    assert not certificate_current(data, ca, DNS + ["other.kong.svc"])
    assert not certificate_current(data, generate_ca(), DNS)
    assert certificate_data(ca, "admin.kong.svc", ["other.kong.svc"], existing=data)[SECRET_CERT_KEY] != data[SECRET_CERT_KEY]


def test_certificate_due_for_renewal() -> None:
    ca = generate_ca()
    data = certificate_data(ca, "admin.kong.svc", DNS)
    later = datetime.now(timezone.utc) + timedelta(days=340)
    assert certificate_current(data, ca, DNS)
    assert not certificate_current(data, ca, DNS, now=later)


def test_cluster_ca_created_once(cluster) -> None:
    first = ensure_cluster_ca(cluster, "kong-system", "ca")
    second = ensure_cluster_ca(cluster, "kong-system", "ca")
    assert first == second
    assert len(cluster.list("Secret", "kong-system")) == 1


def test_long_service_name_keeps_full_names_in_san() -> None:
    ca = generate_ca()
    service = "dataplane-admin-" + "x" * 42 + "-abcde"
    dns = [f"{service}.kong.svc", f"*.{service}.kong.svc"]
    cert_pem, _ = issue_certificate(ca, f"{service}.kong.svc", dns)
    cert = x509.load_pem_x509_certificate(cert_pem.encode())
    common_name = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value
    assert common_name == service
    san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert set(san.get_values_for_type(x509.DNSName)) == set(dns)
