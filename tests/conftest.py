from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from tls_chain_inspector.roots import TrustRootSet

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@dataclass
class Issued:
    cert: x509.Certificate
    key: ec.EllipticCurvePrivateKey

    @property
    def der(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.DER)

    @property
    def pem(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.PEM)

    @property
    def key_pem(self) -> bytes:
        return self.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )


def _key_usage(*, cert_sign: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=not cert_sign,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=cert_sign,
        crl_sign=cert_sign,
        encipher_only=False,
        decipher_only=False,
    )


def make_cert(
    cn: str,
    issuer: Issued | None = None,
    *,
    ca: bool = False,
    path_length: int | None = None,
    basic_constraints: bool = True,
    dns: tuple[str, ...] = (),
    ips: tuple[str, ...] = (),
    eku: tuple[x509.ObjectIdentifier, ...] = (),
    not_before: datetime = NOW - timedelta(days=30),
    not_after: datetime = NOW + timedelta(days=365),
    key: ec.EllipticCurvePrivateKey | None = None,
    subject_name: x509.Name | None = None,
    extensions: tuple[tuple[x509.ExtensionType, bool], ...] = (),
) -> Issued:
    """Build a certificate; without ``issuer`` it is self-signed."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    subject = subject_name or x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    signer_key = issuer.key if issuer else key
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.cert.subject if issuer else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(signer_key.public_key()), critical=False
        )
    )
    if basic_constraints:
        builder = builder.add_extension(
            x509.BasicConstraints(ca=ca, path_length=path_length if ca else None), critical=True
        )
    builder = builder.add_extension(_key_usage(cert_sign=ca), critical=True)
    names: list[x509.GeneralName] = [x509.DNSName(d) for d in dns]
    names += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in ips]
    if names:
        builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)
    if eku:
        builder = builder.add_extension(x509.ExtendedKeyUsage(list(eku)), critical=False)
    for value, critical in extensions:
        builder = builder.add_extension(value, critical=critical)
    return Issued(builder.sign(signer_key, hashes.SHA256()), key)


@dataclass
class Pki:
    root: Issued
    intermediate: Issued
    leaf: Issued

    @property
    def presented(self) -> list[bytes]:
        return [self.leaf.der, self.intermediate.der]

    @property
    def roots(self) -> TrustRootSet:
        return TrustRootSet.from_certificates([self.root.cert], source="test")


@pytest.fixture
def pki() -> Pki:
    """example.com leaf <- Test Intermediate <- Test Root."""
    root = make_cert("Test Root", ca=True)
    intermediate = make_cert("Test Intermediate", root, ca=True, path_length=0)
    leaf = make_cert(
        "example.com",
        intermediate,
        dns=("example.com", "www.example.com"),
        eku=(ExtendedKeyUsageOID.SERVER_AUTH,),
    )
    return Pki(root, intermediate, leaf)


@pytest.fixture
def localhost_pki() -> Pki:
    root = make_cert("Local Root", ca=True)
    intermediate = make_cert("Local Intermediate", root, ca=True)
    leaf = make_cert("localhost", intermediate, dns=("localhost",), ips=("127.0.0.1",))
    return Pki(root, intermediate, leaf)


def with_duplicate_extension(der: bytes) -> bytes:
    """Rewrite the authorityKeyIdentifier OID to subjectKeyIdentifier, leaving two SKI extensions."""
    aki_oid = b"\x06\x03\x55\x1d\x23"
    assert der.count(aki_oid) == 1
    return der.replace(aki_oid, b"\x06\x03\x55\x1d\x0e")
