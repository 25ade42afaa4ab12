from __future__ import annotations

from types import SimpleNamespace

import pytest

from conftest import make_cert, with_duplicate_extension
from tls_chain_inspector import roots as roots_mod
from tls_chain_inspector.errors import TrustStoreError
from tls_chain_inspector.parse import parse_certificate
from tls_chain_inspector.roots import (
    TrustRootSet,
    load_mozilla_roots,
    load_pem_bundle,
    load_system_roots,
    load_trust_roots,
)
from tls_chain_inspector.utils import der_to_pem


@pytest.fixture
def bundle(tmp_path, pki):
    other = make_cert("Second Root", ca=True)
    path = tmp_path / "roots.pem"
    # duplicates collapse
    path.write_bytes(pki.root.pem + other.pem + pki.root.pem)
    return path


def test_load_pem_bundle(bundle, pki):
    roots = load_pem_bundle(bundle)

    assert len(roots) == 2
    assert roots.source == str(bundle)
    assert roots.contains(parse_certificate(pki.root.der))
    assert not roots.contains(parse_certificate(pki.intermediate.der))


def test_issuers_are_found_by_subject(pki):
    roots = pki.roots
    issuers = roots.issuers_of(parse_certificate(pki.intermediate.der))
    assert [r.der for r in issuers] == [pki.root.der]
    assert roots.issuers_of(parse_certificate(pki.leaf.der)) == []


def test_missing_bundle(tmp_path):
    with pytest.raises(TrustStoreError, match="cannot read"):
        load_pem_bundle(tmp_path / "nope.pem")


def test_undecodable_bundle(tmp_path):
    path = tmp_path / "junk.pem"
    path.write_text("this is not a certificate\n")
    with pytest.raises(TrustStoreError, match="cannot decode"):
        load_pem_bundle(path)


def test_bundle_with_one_bad_entry_is_rejected(tmp_path, pki):
    broken = make_cert("Broken Root", ca=True)
    path = tmp_path / "mixed.pem"
    path.write_bytes(pki.root.pem + der_to_pem(with_duplicate_extension(broken.der)).encode())

    with pytest.raises(TrustStoreError, match="cannot decode CA bundle"):
        load_pem_bundle(path)


def test_platform_store_skips_bad_entries(tmp_path, pki, monkeypatch):
    broken = make_cert("Broken Root", ca=True)
    path = tmp_path / "system.pem"
    path.write_bytes(pki.root.pem + der_to_pem(with_duplicate_extension(broken.der)).encode())
    paths = SimpleNamespace(cafile=str(path), capath=None)
    monkeypatch.setattr(roots_mod.ssl, "get_default_verify_paths", lambda: paths)

    roots = load_system_roots()
    assert roots.source == "system"
    assert len(roots) == 1


def test_ca_file_replaces_store(bundle, monkeypatch):
    monkeypatch.setattr(roots_mod, "load_system_roots", lambda: pytest.fail("store must not be consulted"))
    roots = load_trust_roots(str(bundle), "system")
    assert roots.source == str(bundle)


def test_unknown_store():
    with pytest.raises(TrustStoreError, match="unknown trust store"):
        load_trust_roots(None, "corporate")


def test_mozilla_store_is_not_empty():
    roots = load_mozilla_roots()
    assert roots.source == "mozilla"
    assert len(roots) > 50


def test_system_store_reads_cafile(bundle, monkeypatch):
    paths = SimpleNamespace(cafile=str(bundle), capath=None)
    monkeypatch.setattr(roots_mod.ssl, "get_default_verify_paths", lambda: paths)

    roots = load_system_roots()
    assert roots.source == "system"
    assert len(roots) == 2


def test_system_store_reads_capath(tmp_path, pki, monkeypatch):
    (tmp_path / "a.pem").write_bytes(pki.root.pem)
    (tmp_path / "README").write_text("not a cert")
    paths = SimpleNamespace(cafile=None, capath=str(tmp_path))
    monkeypatch.setattr(roots_mod.ssl, "get_default_verify_paths", lambda: paths)

    roots = load_system_roots()
    assert roots.source == "system"
    assert len(roots) == 1


def test_empty_system_store_falls_back_to_mozilla(tmp_path, monkeypatch):
    paths = SimpleNamespace(cafile=str(tmp_path / "missing.pem"), capath=None)
    monkeypatch.setattr(roots_mod.ssl, "get_default_verify_paths", lambda: paths)

    assert load_system_roots().source == "mozilla"


def test_empty_root_set():
    roots = TrustRootSet.from_certificates([], source="empty")
    assert len(roots) == 0
