from __future__ import annotations

import argparse
import ipaddress
import json
import logging
import sys
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from . import __version__
from .config import Settings, get_settings
from .errors import InspectorError, TargetError, TrustStoreError
from .fetch import CaptureOptions, encode_server_name, inspect_target
from .models import DEFAULT_TLS_PORT, ConnectionTarget
from .render import build_error_payload, build_payload, render_text
from .roots import STORES, load_trust_roots

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FETCH_FAILED = 3
EXIT_UNTRUSTED = 4


def _write_output(out_path: str | None, payload: Any) -> None:
    text = json.dumps(payload, indent=2, ensure_ascii=False)
    _write_text(out_path, text + "\n")


def _write_text(out_path: str | None, text: str) -> None:
    if out_path:
        Path(out_path).write_text(text, encoding="utf-8")
    else:
        sys.stdout.write(text)
        sys.stdout.flush()


def parse_args(argv: list[str], settings: Settings) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="tls-chain-inspector",
        description="Show the certificate chain a TLS server presents and explain whether it is trusted.",
        epilog=f"Exit status: {EXIT_OK} trusted, {EXIT_UNTRUSTED} presented but untrusted, "
        f"{EXIT_FETCH_FAILED} connection or parse failure, {EXIT_ERROR} usage or trust store error.",
    )
    p.add_argument("target", nargs="?", help="host, host:port or http[s]://host[:port]/... (port defaults to 443)")
    p.add_argument("--sni", "--servername", dest="sni", help="Override SNI/server name and expected hostname (default: host)")
    p.add_argument("--ca-file", help="PEM bundle of trusted roots; replaces the trust store")
    p.add_argument(
        "--store",
        choices=STORES,
        default=settings.store,
        help=f"Trust store to use when --ca-file is not given (default: {settings.store})",
    )
    p.add_argument(
        "--timeout",
        type=float,
        default=settings.timeout_seconds,
        help=f"Connect and handshake timeout in seconds (default: {settings.timeout_seconds:g})",
    )
    p.add_argument(
        "--legacy-rsa-kex",
        action="store_true",
        default=settings.legacy_rsa_kex,
        help="Also offer RSA key exchange cipher suites for old servers",
    )
    p.add_argument("--no-hostname-check", action="store_true", help="Do not require the leaf to match the server name")
    p.add_argument("--pem", action="store_true", help="Print only the PEM blocks and the verdict, without summaries")
    p.add_argument("--json", action="store_true", help="Print a JSON report instead of text")
    p.add_argument("--out", "-o", help="Write output to file (default: stdout)")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging on stderr")
    p.add_argument("--version", action="store_true", help="Print version and exit")
    return p.parse_args(argv)


def parse_target(target: str, sni: str | None = None) -> ConnectionTarget:
    """
    Accept ``host``, ``host:port``, ``[v6]:port`` or an http(s) URL. Only the
    authority of a URL is used.
    """
    raw = target.strip()
    if not raw:
        raise TargetError("target is empty")

    # A bare IPv6 address would otherwise look like host:port.
    try:
        return _checked(ConnectionTarget(str(ipaddress.ip_address(raw)), DEFAULT_TLS_PORT, sni or None))
    except ValueError:
        pass

    try:
        parts = urlsplit(raw if raw.startswith(("http://", "https://")) else f"//{raw}")
    except ValueError as e:
        raise TargetError(f"cannot parse {target!r}: {e}") from e

    try:
        host = parts.hostname
        port = parts.port
    except ValueError as e:
        raise TargetError(f"invalid port in {target!r}") from e
    if not host:
        raise TargetError(f"no host in {target!r}")
    if port == 0:
        raise TargetError("port out of range")
    return _checked(ConnectionTarget(host, port or DEFAULT_TLS_PORT, sni or None))


def _checked(target: ConnectionTarget) -> ConnectionTarget:
    # Reject names that cannot go into the SNI extension before any network activity.
    if target.sends_sni:
        encode_server_name(target.server_name)
    return target


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    try:
        settings = get_settings()
    except InspectorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    args = parse_args(sys.argv[1:] if argv is None else argv, settings)

    if args.version:
        print(__version__)
        return EXIT_OK

    if not args.target:
        print("usage: tls-chain-inspector <host|host:port|http[s]://url>", file=sys.stderr)
        return EXIT_ERROR

    _configure_logging(args.verbose)

    try:
        target = parse_target(args.target, sni=args.sni)
    except TargetError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    trust_store = args.ca_file or args.store
    try:
        roots = load_trust_roots(args.ca_file, args.store)
    except TrustStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    options = CaptureOptions(timeout_seconds=args.timeout, legacy_rsa_kex=args.legacy_rsa_kex)
    try:
        inspection = inspect_target(target, roots, options, verify_hostname=not args.no_hostname_check)
    except InspectorError as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.json:
            _write_output(args.out, build_error_payload(target, trust_store, str(e)))
        return EXIT_FETCH_FAILED

    if args.json:
        _write_output(args.out, build_payload(inspection, trust_store))
    else:
        _write_text(args.out, render_text(inspection.chain, inspection.evaluation, pem_only=args.pem))

    return EXIT_OK if inspection.evaluation.outcome.trusted else EXIT_UNTRUSTED


if __name__ == "__main__":
    raise SystemExit(main())
