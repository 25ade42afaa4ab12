from __future__ import annotations

import json

from conftest import NOW
from tls_chain_inspector.models import ConnectionTarget, Inspection, RawCertificateChain
from tls_chain_inspector.render import SEPARATOR, build_error_payload, build_payload, render_text
from tls_chain_inspector.roots import TrustRootSet
from tls_chain_inspector.utils import der_to_pem
from tls_chain_inspector.verify import evaluate_chain


def _inspection(pki, roots=None, hostname="example.com"):
    chain = RawCertificateChain(tuple(pki.presented))
    evaluation = evaluate_chain(chain, roots if roots is not None else pki.roots, hostname=hostname, now=NOW)
    return Inspection(
        target=ConnectionTarget("example.com"),
        chain=chain,
        evaluation=evaluation,
        tls_version="TLSv1.3",
        cipher="TLS_AES_128_GCM_SHA256",
    )


def test_text_interleaves_pem_and_summaries(pki):
    insp = _inspection(pki)
    lines = render_text(insp.chain, insp.evaluation).splitlines()

    assert lines.count(SEPARATOR) == 3
    assert lines[0] == SEPARATOR
    assert lines[1] == "-----BEGIN CERTIFICATE-----"
    end = lines.index("-----END CERTIFICATE-----")
    assert lines[end + 1] == f"Serial Number : {pki.leaf.cert.serial_number}"
    assert lines[end + 2] == "Subject: CN=example.com"
    assert lines[end + 3] == "Issuer: CN=Test Intermediate"
    assert lines[end + 4].startswith("Not Before: 2025-05-02 12:00:00 +0000 UTC")
    assert lines[end + 5].startswith("Not After: 2026-06-01 12:00:00 +0000 UTC")
    assert lines[end + 6] == "Subject Alt Names: example.com;www.example.com"
    assert lines[end + 7] == SEPARATOR

    assert lines[-3] == SEPARATOR
    assert lines[-2] == "Trusted certificate: 1 verified chain(s)"
    assert lines[-1] == "  [1] CN=example.com -> CN=Test Intermediate -> CN=Test Root"


def test_text_untrusted_verdict(pki):
    insp = _inspection(pki, roots=TrustRootSet.from_certificates([], source="empty"))
    out = render_text(insp.chain, insp.evaluation)

    assert out.endswith("[incomplete_chain]\n")
    assert out.splitlines()[-1].startswith("Untrusted certificate: ")


def test_pem_only(pki):
    insp = _inspection(pki)
    out = render_text(insp.chain, insp.evaluation, pem_only=True)

    assert "Serial Number" not in out
    assert der_to_pem(pki.leaf.der) in out
    assert der_to_pem(pki.intermediate.der) in out


def test_pem_matches_cryptography_encoding(pki):
    assert der_to_pem(pki.leaf.der).encode() == pki.leaf.pem


def test_json_payload(pki):
    payload = build_payload(_inspection(pki, hostname="other.com"), trust_store="system")
    json.dumps(payload)

    assert payload["target"] == {"host": "example.com", "port": 443, "sni": "example.com"}
    assert payload["tls"] == {"version": "TLSv1.3", "cipher": "TLS_AES_128_GCM_SHA256"}
    assert payload["chain"]["presented_count"] == 2
    leaf = payload["chain"]["certs"][0]["summary"]
    assert leaf["serial_number"] == hex(pki.leaf.cert.serial_number)
    assert leaf["not_after"] == "2026-06-01T12:00:00Z"
    assert payload["trust"]["trusted"] is False
    assert payload["trust"]["reason"] == "hostname_mismatch"
    assert payload["trust"]["hostname"] == "other.com"
    assert payload["errors"] == []


def test_error_payload():
    payload = build_error_payload(ConnectionTarget("10.0.0.1", 8443), "mozilla", "connection refused")
    assert payload["target"] == {"host": "10.0.0.1", "port": 8443, "sni": None}
    assert payload["trust"] is None
    assert payload["errors"] == ["connection refused"]
