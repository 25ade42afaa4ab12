"""
Path validation over the chain a server presented.

The first certificate is the leaf. Everything after it is treated as an
unordered pool of candidate intermediates: servers routinely send chains in the
wrong order, with extra certificates, or with pieces missing, and the point of
this module is to say which of those happened.

Checks run in this order: leaf validity window, expected hostname, path to a
trusted root, then the leaf's extended key usage. When no path exists, the
failure seen deepest into the search is reported since it is the one closest
to a complete chain.

Every candidate path is then handed to OpenSSL's verifier, which enforces
RFC 5280 in full, name constraints and unhandled critical extensions included.
A path only counts as verified once OpenSSL accepts it.
"""
from __future__ import annotations

import ipaddress
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Iterable, Sequence

import idna
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from OpenSSL import crypto

from .errors import EmptyChainError
from .models import (
    Chain,
    Evaluation,
    FailureReason,
    ParsedCertificate,
    TrustFailure,
    VerificationOutcome,
)
from .parse import parse_chain
from .roots import TrustRootSet
from .utils import dt_to_text, utc_now

logger = logging.getLogger(__name__)

# Certificates in one path, leaf and root included.
MAX_CHAIN_LENGTH = 10
MAX_SIGNATURE_CHECKS = 100

_SERVER_AUTH_USAGES = {
    ExtendedKeyUsageOID.SERVER_AUTH.dotted_string,
    ExtendedKeyUsageOID.ANY_EXTENDED_KEY_USAGE.dotted_string,
}

# X509_V_ERR_* codes from OpenSSL's x509_vfy.h.
_OPENSSL_REASONS = {
    2: FailureReason.INCOMPLETE_CHAIN,  # unable to get issuer certificate
    4: FailureReason.BAD_SIGNATURE,  # unable to decrypt certificate signature
    6: FailureReason.BAD_SIGNATURE,  # unable to decode issuer public key
    7: FailureReason.BAD_SIGNATURE,  # certificate signature failure
    9: FailureReason.NOT_YET_VALID,
    10: FailureReason.EXPIRED,
    18: FailureReason.UNKNOWN_AUTHORITY,  # self-signed leaf
    19: FailureReason.UNKNOWN_AUTHORITY,  # self-signed certificate in chain
    20: FailureReason.INCOMPLETE_CHAIN,  # unable to get local issuer certificate
    21: FailureReason.UNKNOWN_AUTHORITY,  # unable to verify the first certificate
    22: FailureReason.TOO_MANY_INTERMEDIATES,  # chain too long
    24: FailureReason.NOT_AUTHORIZED_TO_SIGN,  # invalid CA certificate
    25: FailureReason.TOO_MANY_INTERMEDIATES,  # path length constraint exceeded
    26: FailureReason.INCOMPATIBLE_USAGE,
    27: FailureReason.UNKNOWN_AUTHORITY,  # certificate not trusted
    32: FailureReason.NOT_AUTHORIZED_TO_SIGN,  # key usage lacks keyCertSign
    34: FailureReason.UNHANDLED_CRITICAL_EXTENSION,
    47: FailureReason.NAME_CONSTRAINTS_VIOLATION,  # permitted subtree
    48: FailureReason.NAME_CONSTRAINTS_VIOLATION,  # excluded subtree
    49: FailureReason.NAME_CONSTRAINTS_VIOLATION,
    51: FailureReason.NAME_CONSTRAINTS_VIOLATION,
    52: FailureReason.NAME_CONSTRAINTS_VIOLATION,
    53: FailureReason.NAME_CONSTRAINTS_VIOLATION,
}


def evaluate_chain(
    raw_chain: Iterable[bytes],
    roots: TrustRootSet,
    hostname: str | None = None,
    now: datetime | None = None,
) -> Evaluation:
    """
    Parse a presented chain and decide whether it leads to one of ``roots``.

    Parse errors are raised; trust problems are returned in the outcome.
    """
    ders = tuple(raw_chain)
    if not ders:
        raise EmptyChainError("no certificates to evaluate")
    now = _as_utc(now or utc_now())
    certs = parse_chain(ders)
    outcome = verify(certs[0], certs[1:], roots, hostname=hostname, now=now)
    if outcome.trusted:
        logger.debug("verified %d chain(s) for %s", len(outcome.chains), certs[0].summary.subject)
    else:
        logger.debug("untrusted %s: %s", certs[0].summary.subject, outcome.failure)
    return Evaluation(certificates=certs, outcome=outcome, evaluated_at=now, hostname=hostname or None)


def verify(
    leaf: ParsedCertificate,
    intermediates: Sequence[ParsedCertificate],
    roots: TrustRootSet,
    *,
    hostname: str | None = None,
    now: datetime,
) -> VerificationOutcome:
    now = _as_utc(now)

    failure = _check_validity(leaf, now, role="certificate")
    if failure is None and hostname:
        failure = check_hostname(leaf, hostname)
    if failure is not None:
        return VerificationOutcome.failed(failure)

    if roots.contains(leaf):
        candidates: list[Chain] = [(leaf,)]
    else:
        builder = _PathBuilder(leaf, intermediates, roots, now)
        candidates = builder.build()
        if not candidates:
            return VerificationOutcome.failed(builder.failure)

    chains, failure = _confirm_paths(candidates, roots, now)
    if not chains:
        return VerificationOutcome.failed(failure)

    failure = _check_server_usage(leaf)
    if failure is not None:
        return VerificationOutcome.failed(failure)
    return VerificationOutcome.verified(chains)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _check_validity(cert: ParsedCertificate, now: datetime, role: str) -> TrustFailure | None:
    s = cert.summary
    if now < s.not_before:
        return TrustFailure(
            FailureReason.NOT_YET_VALID,
            f"{role} is not yet valid: current time {dt_to_text(now)} is before {dt_to_text(s.not_before)}",
            s.subject,
        )
    if now > s.not_after:
        return TrustFailure(
            FailureReason.EXPIRED,
            f"{role} has expired: current time {dt_to_text(now)} is after {dt_to_text(s.not_after)}",
            s.subject,
        )
    return None


# ---------------------------------------------------------------------------
# Hostname
# ---------------------------------------------------------------------------

def _normalize_host(hostname: str) -> str:
    host = hostname.strip().strip("[]").rstrip(".").lower()
    if host.isascii():
        return host
    try:
        return idna.encode(host, uts46=True).decode("ascii")
    except idna.IDNAError:
        return host


def _match_dns(pattern: str, host: str) -> bool:
    pattern = pattern.rstrip(".").lower()
    if pattern == host:
        return True
    # Only a whole left-most label may be a wildcard, and never directly under a TLD.
    if not pattern.startswith("*."):
        return False
    suffix = pattern[1:]
    if suffix.count(".") < 2 or not host.endswith(suffix):
        return False
    label = host[: -len(suffix)]
    return bool(label) and "." not in label


def _common_names(cert: ParsedCertificate) -> list[str]:
    return [
        str(attr.value)
        for attr in cert.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    ]


def match_hostname(cert: ParsedCertificate, hostname: str) -> bool:
    host = _normalize_host(hostname)
    s = cert.summary
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        ip = None

    if ip is not None:
        return any(ipaddress.ip_address(candidate) == ip for candidate in s.san_ip)

    names = s.san_dns
    if not names and not s.san_ip:
        # Legacy certificates without a SAN extension.
        names = _common_names(cert)
    return any(_match_dns(name, host) for name in names)


def check_hostname(cert: ParsedCertificate, hostname: str) -> TrustFailure | None:
    if match_hostname(cert, hostname):
        return None
    valid_for = cert.summary.san_dns + cert.summary.san_ip or _common_names(cert)
    if valid_for:
        message = f"certificate is valid for {', '.join(valid_for)}, not {hostname}"
    else:
        message = f"certificate is not valid for any names, but wanted to match {hostname}"
    return TrustFailure(FailureReason.HOSTNAME_MISMATCH, message, cert.summary.subject)


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------

def _check_server_usage(leaf: ParsedCertificate) -> TrustFailure | None:
    ekus = leaf.summary.ext_key_usage
    if not ekus or _SERVER_AUTH_USAGES.intersection(ekus):
        return None
    return TrustFailure(
        FailureReason.INCOMPATIBLE_USAGE,
        f"certificate specifies an incompatible key usage ({', '.join(ekus)}), serverAuth required",
        leaf.summary.subject,
    )


# ---------------------------------------------------------------------------
# Path building
# ---------------------------------------------------------------------------

class _PathBuilder:
    """Depth-first search from the leaf towards any certificate in the root set."""

    def __init__(
        self,
        leaf: ParsedCertificate,
        pool: Sequence[ParsedCertificate],
        roots: TrustRootSet,
        now: datetime,
    ) -> None:
        self.leaf = leaf
        self.roots = roots
        self.now = now
        self.checks = 0
        self.chains: list[Chain] = []
        self._failure: TrustFailure | None = None
        self._failure_depth = -1

        self.pool_by_subject: dict[x509.Name, list[ParsedCertificate]] = defaultdict(list)
        seen = {leaf.sha256}
        for cert in pool:
            # Presented roots are only honoured through the root set.
            if cert.sha256 in seen or roots.contains(cert):
                continue
            seen.add(cert.sha256)
            self.pool_by_subject[cert.certificate.subject].append(cert)

    @property
    def failure(self) -> TrustFailure:
        if self._failure is None:
            return TrustFailure(
                FailureReason.UNKNOWN_AUTHORITY,
                "certificate signed by unknown authority",
                self.leaf.summary.subject,
            )
        return self._failure

    def build(self) -> list[Chain]:
        self._extend((self.leaf,))
        return sorted(self.chains, key=len)

    def _note(self, depth: int, failure: TrustFailure) -> None:
        if depth > self._failure_depth:
            self._failure_depth = depth
            self._failure = failure

    def _candidates(self, path: Chain) -> list[tuple[ParsedCertificate, bool]]:
        cert = path[-1]
        in_path = {c.sha256 for c in path}
        candidates = [(c, True) for c in self.roots.issuers_of(cert)]
        candidates += [(c, False) for c in self.pool_by_subject.get(cert.certificate.issuer, ())]
        return [(c, is_root) for c, is_root in candidates if c.sha256 not in in_path]

    def _extend(self, path: Chain) -> None:
        depth = len(path)
        candidates = self._candidates(path)
        if not candidates:
            self._note(depth, self._dead_end(path))
            return

        for candidate, is_root in candidates:
            if self.checks >= MAX_SIGNATURE_CHECKS:
                self._note(depth, TrustFailure(
                    FailureReason.UNKNOWN_AUTHORITY,
                    f"gave up after {MAX_SIGNATURE_CHECKS} signature checks without reaching a trusted root",
                    self.leaf.summary.subject,
                ))
                return
            self.checks += 1

            failure = self._check_issuer(path, candidate, is_root)
            if failure is not None:
                self._note(depth + 1, failure)
                continue
            if is_root:
                self.chains.append(path + (candidate,))
                continue
            if depth + 1 >= MAX_CHAIN_LENGTH:
                self._note(depth + 1, TrustFailure(
                    FailureReason.TOO_MANY_INTERMEDIATES,
                    f"chain is longer than {MAX_CHAIN_LENGTH} certificates",
                    candidate.summary.subject,
                ))
                continue
            self._extend(path + (candidate,))

    def _dead_end(self, path: Chain) -> TrustFailure:
        cert = path[-1]
        s = cert.summary
        if cert is self.leaf:
            if cert.self_issued:
                message = "certificate is self-signed and not in the trust store"
            else:
                message = f"certificate signed by unknown authority ({s.issuer})"
            return TrustFailure(FailureReason.UNKNOWN_AUTHORITY, message, s.subject)
        if cert.self_issued:
            return TrustFailure(
                FailureReason.UNKNOWN_AUTHORITY,
                f"chain ends at {s.subject}, which is not a trusted root",
                s.subject,
            )
        return TrustFailure(
            FailureReason.INCOMPLETE_CHAIN,
            f"issuer {s.issuer} of {s.subject} was not presented and is not a trusted root (missing intermediate?)",
            s.subject,
        )

    def _check_issuer(self, path: Chain, candidate: ParsedCertificate, is_root: bool) -> TrustFailure | None:
        child = path[-1]
        subject = candidate.summary.subject
        try:
            child.certificate.verify_directly_issued_by(candidate.certificate)
        except InvalidSignature:
            return TrustFailure(
                FailureReason.BAD_SIGNATURE,
                f"signature on {child.summary.subject} does not verify with the key of {subject}",
                child.summary.subject,
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            return TrustFailure(
                FailureReason.BAD_SIGNATURE,
                f"cannot check signature on {child.summary.subject}: {e}",
                child.summary.subject,
            )

        failure = _check_validity(candidate, self.now, role="root" if is_root else "intermediate")
        if failure is not None:
            return TrustFailure(failure.reason, f"{subject}: {failure.message}", subject)

        try:
            bc = candidate.certificate.extensions.get_extension_for_class(x509.BasicConstraints).value
        except x509.ExtensionNotFound:
            bc = None
        # v1 roots carry no basic constraints and are trusted as configured.
        if (bc is None and not is_root) or (bc is not None and not bc.ca):
            return TrustFailure(
                FailureReason.NOT_AUTHORIZED_TO_SIGN,
                f"{subject} is not a CA certificate but issued {child.summary.subject}",
                subject,
            )
        if candidate.summary.key_usage and "key_cert_sign" not in candidate.summary.key_usage:
            return TrustFailure(
                FailureReason.NOT_AUTHORIZED_TO_SIGN,
                f"{subject} is not allowed to sign certificates (key usage lacks keyCertSign)",
                subject,
            )

        below = len(path) - 1
        if bc is not None and bc.path_length is not None and below > bc.path_length:
            return TrustFailure(
                FailureReason.TOO_MANY_INTERMEDIATES,
                f"{subject} allows {bc.path_length} intermediate(s) below it, found {below}",
                subject,
            )
        return None


# ---------------------------------------------------------------------------
# RFC 5280 validation
# ---------------------------------------------------------------------------

def _x509_store(roots: TrustRootSet, now: datetime) -> crypto.X509Store:
    store = crypto.X509Store()
    for root in roots.roots:
        store.add_cert(crypto.X509.from_cryptography(root.certificate))
    # Every member of the root set is an anchor, self-signed or not.
    store.set_flags(crypto.X509StoreFlags.PARTIAL_CHAIN)
    store.set_time(now)
    return store


def _confirm_paths(
    candidates: Sequence[Chain], roots: TrustRootSet, now: datetime
) -> tuple[list[Chain], TrustFailure | None]:
    """Keep the candidate paths OpenSSL accepts; otherwise report why the first was rejected."""
    store = _x509_store(roots, now)
    chains: list[Chain] = []
    failure: TrustFailure | None = None
    for path in candidates:
        rejected = _openssl_verify(store, path)
        if rejected is None:
            chains.append(path)
        elif failure is None:
            failure = rejected
    return chains, failure


def _openssl_verify(store: crypto.X509Store, path: Chain) -> TrustFailure | None:
    leaf = crypto.X509.from_cryptography(path[0].certificate)
    untrusted = [crypto.X509.from_cryptography(c.certificate) for c in path[1:-1]]
    try:
        crypto.X509StoreContext(store, leaf, chain=untrusted).verify_certificate()
    except crypto.X509StoreContextError as e:
        code, depth, text = e.errors
        if e.certificate is not None:
            subject = e.certificate.to_cryptography().subject.rfc4514_string()
        else:
            subject = path[min(depth, len(path) - 1)].summary.subject
        reason = _OPENSSL_REASONS.get(code, FailureReason.INVALID)
        if reason is FailureReason.INCOMPLETE_CHAIN and depth == 0:
            reason = FailureReason.UNKNOWN_AUTHORITY
        logger.debug("OpenSSL rejected path at depth %d (%s): %s", depth, subject, text)
        return TrustFailure(reason, f"{subject}: {text}", subject)
    return None
