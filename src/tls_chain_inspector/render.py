from __future__ import annotations

from typing import Any

from . import __version__
from .models import (
    CertSummary,
    ConnectionTarget,
    Evaluation,
    Inspection,
    ParsedCertificate,
    RawCertificateChain,
    VerificationOutcome,
)
from .utils import b64_der, dt_to_text, dt_to_utc_iso

SEPARATOR = "=" * 40


def summary_lines(s: CertSummary) -> list[str]:
    return [
        f"Serial Number : {s.serial_number}",
        f"Subject: {s.subject}",
        f"Issuer: {s.issuer}",
        f"Not Before: {dt_to_text(s.not_before)}",
        f"Not After: {dt_to_text(s.not_after)}",
        f"Subject Alt Names: {';'.join(s.san_dns)}",
    ]


def verdict_lines(outcome: VerificationOutcome) -> list[str]:
    if outcome.failure is not None:
        return [f"Untrusted certificate: {outcome.failure.message} [{outcome.failure.reason.value}]"]
    lines = [f"Trusted certificate: {len(outcome.chains)} verified chain(s)"]
    for i, chain in enumerate(outcome.chains, 1):
        lines.append(f"  [{i}] " + " -> ".join(c.summary.subject for c in chain))
    return lines


def render_text(chain: RawCertificateChain, evaluation: Evaluation, *, pem_only: bool = False) -> str:
    """
    One separator before each certificate's PEM block (and summary), one more
    before the verdict. With ``pem_only`` the summaries are left out.
    """
    lines: list[str] = []
    for pem, cert in zip(chain.pem_blocks(), evaluation.certificates):
        lines.append(SEPARATOR)
        lines.append(pem.rstrip("\n"))
        if not pem_only:
            lines.extend(summary_lines(cert.summary))
    lines.append(SEPARATOR)
    lines.extend(verdict_lines(evaluation.outcome))
    return "\n".join(lines) + "\n"


def _summary_to_dict(s: CertSummary) -> dict[str, Any]:
    return {
        "subject": s.subject,
        "issuer": s.issuer,
        "serial_number": hex(s.serial_number),
        "not_before": dt_to_utc_iso(s.not_before),
        "not_after": dt_to_utc_iso(s.not_after),
        "san_dns": s.san_dns,
        "san_ip": s.san_ip,
        "is_ca": s.is_ca,
        "key_usage": s.key_usage,
        "ext_key_usage": s.ext_key_usage,
        "ski": s.ski,
        "aki": s.aki,
        "signature_algorithm": s.signature_algorithm,
        "public_key_type": s.public_key_type,
    }


def _cert_to_dict(cert: ParsedCertificate) -> dict[str, Any]:
    return {
        "sha256": cert.sha256,
        "der_b64": b64_der(cert.der),
        "summary": _summary_to_dict(cert.summary),
    }


def _target_to_dict(target: ConnectionTarget) -> dict[str, Any]:
    return {"host": target.host, "port": target.port, "sni": target.server_name if target.sends_sni else None}


def _trust_to_dict(evaluation: Evaluation) -> dict[str, Any]:
    outcome = evaluation.outcome
    failure = outcome.failure
    return {
        "trusted": outcome.trusted,
        "hostname": evaluation.hostname,
        "evaluated_at": dt_to_utc_iso(evaluation.evaluated_at),
        "reason": failure.reason.value if failure else None,
        "message": failure.message if failure else None,
        "chains": [[c.sha256 for c in chain] for chain in outcome.chains],
    }


def build_payload(inspection: Inspection, trust_store: str) -> dict[str, Any]:
    evaluation = inspection.evaluation
    return {
        "target": _target_to_dict(inspection.target),
        "version": __version__,
        "trust_store": trust_store,
        "tls": {
            "version": inspection.tls_version,
            "cipher": inspection.cipher,
        },
        "chain": {
            "presented_count": len(evaluation.certificates),
            "certs": [_cert_to_dict(c) for c in evaluation.certificates],
        },
        "trust": _trust_to_dict(evaluation),
        "errors": [inspection.handshake_error] if inspection.handshake_error else [],
    }


def build_error_payload(target: ConnectionTarget | None, trust_store: str | None, error: str) -> dict[str, Any]:
    return {
        "target": _target_to_dict(target) if target else None,
        "version": __version__,
        "trust_store": trust_store,
        "tls": None,
        "chain": None,
        "trust": None,
        "errors": [error],
    }
