from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator

from cryptography import x509

from .utils import der_to_pem

DEFAULT_TLS_PORT = 443


@dataclass(frozen=True)
class ConnectionTarget:
    host: str
    port: int = DEFAULT_TLS_PORT
    sni: str | None = None

    @property
    def server_name(self) -> str:
        return self.sni or self.host

    @property
    def sends_sni(self) -> bool:
        # IP literals are not permitted in the server_name extension.
        return not _is_ip(self.server_name)

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class RawCertificateChain:
    """
    DER blobs exactly as the peer sent them: leaf first.
    """
    ders: tuple[bytes, ...]

    def __len__(self) -> int:
        return len(self.ders)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self.ders)

    def pem_blocks(self) -> list[str]:
        return [der_to_pem(der) for der in self.ders]


@dataclass(frozen=True)
class CertSummary:
    """
    Descriptive fields of an X.509 certificate, independent of trust.
    """
    subject: str
    issuer: str
    serial_number: int
    not_before: datetime
    not_after: datetime
    san_dns: list[str] = field(default_factory=list)
    san_ip: list[str] = field(default_factory=list)
    is_ca: bool = False
    key_usage: list[str] = field(default_factory=list)
    ext_key_usage: list[str] = field(default_factory=list)
    ski: str | None = None
    aki: str | None = None
    signature_algorithm: str | None = None
    public_key_type: str | None = None


@dataclass(frozen=True)
class ParsedCertificate:
    """
    Raw certificate + parsed summary.
    """
    sha256: str
    der: bytes
    summary: CertSummary
    certificate: x509.Certificate = field(compare=False, repr=False)

    @property
    def self_issued(self) -> bool:
        return self.certificate.subject == self.certificate.issuer


class FailureReason(str, enum.Enum):
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    HOSTNAME_MISMATCH = "hostname_mismatch"
    UNKNOWN_AUTHORITY = "unknown_authority"
    INCOMPLETE_CHAIN = "incomplete_chain"
    NOT_AUTHORIZED_TO_SIGN = "not_authorized_to_sign"
    TOO_MANY_INTERMEDIATES = "too_many_intermediates"
    BAD_SIGNATURE = "bad_signature"
    INCOMPATIBLE_USAGE = "incompatible_usage"
    NAME_CONSTRAINTS_VIOLATION = "name_constraints_violation"
    UNHANDLED_CRITICAL_EXTENSION = "unhandled_critical_extension"
    INVALID = "invalid"


@dataclass(frozen=True)
class TrustFailure:
    reason: FailureReason
    message: str
    subject: str | None = None

    def __str__(self) -> str:
        return self.message


Chain = tuple[ParsedCertificate, ...]


@dataclass(frozen=True)
class VerificationOutcome:
    """
    Either one or more verified chains (leaf to trusted root) or a single failure.
    """
    chains: tuple[Chain, ...] = ()
    failure: TrustFailure | None = None

    def __post_init__(self) -> None:
        if bool(self.chains) == (self.failure is not None):
            raise ValueError("outcome must carry either verified chains or a failure, not both")

    @classmethod
    def verified(cls, chains: list[Chain]) -> "VerificationOutcome":
        return cls(chains=tuple(chains))

    @classmethod
    def failed(cls, failure: TrustFailure) -> "VerificationOutcome":
        return cls(failure=failure)

    @property
    def trusted(self) -> bool:
        return self.failure is None


@dataclass(frozen=True)
class Evaluation:
    certificates: tuple[ParsedCertificate, ...]
    outcome: VerificationOutcome
    evaluated_at: datetime
    hostname: str | None = None


@dataclass(frozen=True)
class Inspection:
    """
    Everything one handshake produced: what was presented and what we made of it.
    """
    target: ConnectionTarget
    chain: RawCertificateChain
    evaluation: Evaluation
    tls_version: str | None = None
    cipher: str | None = None
    handshake_error: str | None = None
