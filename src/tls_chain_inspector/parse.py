from __future__ import annotations

from typing import Iterable

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm

from .errors import CertificateParseError
from .models import CertSummary, ParsedCertificate
from .utils import sha256_hex

_KEY_USAGE_FLAGS = (
    "digital_signature",
    "content_commitment",
    "key_encipherment",
    "data_encipherment",
    "key_agreement",
    "key_cert_sign",
    "crl_sign",
)


def _name_to_str(name: x509.Name) -> str:
    # RFC4514
    try:
        return name.rfc4514_string()
    except ValueError:
        return str(name)


def _extension(cert: x509.Certificate, ext_type: type[x509.ExtensionType]) -> x509.ExtensionType | None:
    try:
        return cert.extensions.get_extension_for_class(ext_type).value
    except x509.ExtensionNotFound:
        return None


def _get_san(cert: x509.Certificate) -> tuple[list[str], list[str]]:
    san = _extension(cert, x509.SubjectAlternativeName)
    if san is None:
        return [], []
    dns = list(san.get_values_for_type(x509.DNSName))
    ips = [str(ip) for ip in san.get_values_for_type(x509.IPAddress)]
    return dns, ips


def _get_ski(cert: x509.Certificate) -> str | None:
    ski = _extension(cert, x509.SubjectKeyIdentifier)
    return ski.digest.hex() if ski is not None else None


def _get_aki(cert: x509.Certificate) -> str | None:
    aki = _extension(cert, x509.AuthorityKeyIdentifier)
    if aki is None or aki.key_identifier is None:
        return None
    return aki.key_identifier.hex()


def _is_ca(cert: x509.Certificate) -> bool:
    bc = _extension(cert, x509.BasicConstraints)
    return bool(bc and bc.ca)


def _key_usage(cert: x509.Certificate) -> list[str]:
    ku = _extension(cert, x509.KeyUsage)
    if ku is None:
        return []
    flags = [flag for flag in _KEY_USAGE_FLAGS if getattr(ku, flag)]
    # encipher_only / decipher_only raise unless key_agreement is set
    if ku.key_agreement:
        if ku.encipher_only:
            flags.append("encipher_only")
        if ku.decipher_only:
            flags.append("decipher_only")
    return flags


def _ext_key_usage(cert: x509.Certificate) -> list[str]:
    eku = _extension(cert, x509.ExtendedKeyUsage)
    return [oid.dotted_string for oid in eku] if eku is not None else []


def _pubkey_type(cert: x509.Certificate) -> str | None:
    try:
        return cert.public_key().__class__.__name__
    except (UnsupportedAlgorithm, ValueError):
        return None


def _sig_alg(cert: x509.Certificate) -> str | None:
    try:
        return cert.signature_hash_algorithm.name if cert.signature_hash_algorithm else None
    except UnsupportedAlgorithm:
        return None


def summarize(cert: x509.Certificate) -> CertSummary:
    san_dns, san_ip = _get_san(cert)
    return CertSummary(
        subject=_name_to_str(cert.subject),
        issuer=_name_to_str(cert.issuer),
        serial_number=cert.serial_number,
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        san_dns=san_dns,
        san_ip=san_ip,
        is_ca=_is_ca(cert),
        key_usage=_key_usage(cert),
        ext_key_usage=_ext_key_usage(cert),
        ski=_get_ski(cert),
        aki=_get_aki(cert),
        signature_algorithm=_sig_alg(cert),
        public_key_type=_pubkey_type(cert),
    )


def parse_certificate(der: bytes, index: int = 0) -> ParsedCertificate:
    """Decode one DER certificate. ``index`` is its position in the presented chain."""
    try:
        cert = x509.load_der_x509_certificate(der)
        # Touch the extensions now: duplicates or garbage only surface lazily.
        summary = summarize(cert)
    except (ValueError, x509.DuplicateExtension) as e:
        raise CertificateParseError(index, str(e)) from e
    return ParsedCertificate(sha256=sha256_hex(der), der=der, summary=summary, certificate=cert)


def parse_chain(ders: Iterable[bytes]) -> tuple[ParsedCertificate, ...]:
    return tuple(parse_certificate(der, i) for i, der in enumerate(ders))
