from __future__ import annotations

import logging
import os
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import certifi
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .errors import CertificateParseError, TrustStoreError
from .models import ParsedCertificate
from .parse import parse_certificate

logger = logging.getLogger(__name__)

STORES = ("system", "mozilla")


@dataclass(frozen=True)
class TrustRootSet:
    """
    Trust anchors for one run. Looked up by subject name while building paths.
    """
    roots: tuple[ParsedCertificate, ...]
    source: str
    _by_subject: dict[x509.Name, list[ParsedCertificate]] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )
    _fingerprints: frozenset[str] = field(init=False, repr=False, compare=False, default=frozenset())

    def __post_init__(self) -> None:
        for root in self.roots:
            self._by_subject.setdefault(root.certificate.subject, []).append(root)
        object.__setattr__(self, "_fingerprints", frozenset(r.sha256 for r in self.roots))

    @classmethod
    def from_certificates(
        cls, certs: Iterable[x509.Certificate], source: str, *, strict: bool = False
    ) -> "TrustRootSet":
        """
        Dedupe and parse ``certs``. Entries that cannot be decoded are skipped,
        or with ``strict`` abort the load with TrustStoreError.
        """
        seen: set[str] = set()
        roots: list[ParsedCertificate] = []
        for index, cert in enumerate(certs):
            der = cert.public_bytes(serialization.Encoding.DER)
            try:
                parsed = parse_certificate(der, index)
            except CertificateParseError as e:
                if strict:
                    raise TrustStoreError(f"cannot decode CA bundle {source}: {e}") from e
                logger.debug("skipping unusable root in %s: %s", source, e)
                continue
            if parsed.sha256 not in seen:
                seen.add(parsed.sha256)
                roots.append(parsed)
        return cls(roots=tuple(roots), source=source)

    def __len__(self) -> int:
        return len(self.roots)

    def contains(self, cert: ParsedCertificate) -> bool:
        return cert.sha256 in self._fingerprints

    def issuers_of(self, cert: ParsedCertificate) -> list[ParsedCertificate]:
        return list(self._by_subject.get(cert.certificate.issuer, ()))


def _read_pem_certificates(path: Path) -> list[x509.Certificate]:
    try:
        data = path.read_bytes()
    except OSError as e:
        raise TrustStoreError(f"cannot read CA bundle {path}: {e.strerror or e}") from e
    try:
        return x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise TrustStoreError(f"cannot decode CA bundle {path}: {e}") from e


def load_pem_bundle(path: str | os.PathLike[str]) -> TrustRootSet:
    """Load an operator-supplied PEM bundle. It replaces, never extends, the default store."""
    p = Path(path)
    certs = _read_pem_certificates(p)
    logger.debug("loaded %d root(s) from %s", len(certs), p)
    return TrustRootSet.from_certificates(certs, source=str(p), strict=True)


def load_mozilla_roots() -> TrustRootSet:
    certs = _read_pem_certificates(Path(certifi.where()))
    return TrustRootSet.from_certificates(certs, source="mozilla")


def load_system_roots() -> TrustRootSet:
    """
    Read the platform store from the locations OpenSSL was built with.
    Falls back to the Mozilla bundle when the platform exposes nothing readable.
    """
    paths = ssl.get_default_verify_paths()
    certs: list[x509.Certificate] = []

    if paths.cafile and os.path.isfile(paths.cafile):
        try:
            certs.extend(_read_pem_certificates(Path(paths.cafile)))
        except TrustStoreError as e:
            logger.warning("ignoring system CA file: %s", e)

    if paths.capath and os.path.isdir(paths.capath):
        for entry in sorted(Path(paths.capath).iterdir()):
            if not entry.is_file():
                continue
            try:
                certs.extend(_read_pem_certificates(entry))
            except TrustStoreError as e:
                logger.debug("skipping %s: %s", entry, e)

    if not certs:
        logger.warning("no system trust store found, using the Mozilla bundle from certifi")
        return load_mozilla_roots()
    return TrustRootSet.from_certificates(certs, source="system")


def load_trust_roots(ca_file: str | None = None, store: str = "system") -> TrustRootSet:
    if ca_file:
        return load_pem_bundle(ca_file)
    if store == "mozilla":
        return load_mozilla_roots()
    if store == "system":
        return load_system_roots()
    raise TrustStoreError(f"unknown trust store {store!r} (expected one of: {', '.join(STORES)})")
