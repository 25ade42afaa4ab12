from __future__ import annotations

import logging
import select
import socket
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import idna
from cryptography.hazmat.primitives import serialization
from OpenSSL import SSL, crypto

from .errors import EmptyChainError, HandshakeTimeoutError, InspectorError, TargetError, TransportError
from .models import ConnectionTarget, Evaluation, Inspection, RawCertificateChain
from .roots import TrustRootSet
from .verify import evaluate_chain

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

# Forward-secret suites only; TLS 1.3 suites are configured separately by OpenSSL.
MODERN_CIPHERS = "ECDHE+AESGCM:ECDHE+CHACHA20:DHE+AESGCM:DHE+CHACHA20:ECDHE+AES:!aNULL:!eNULL:!MD5:!DSS"
LEGACY_RSA_KEX_CIPHERS = "RSA+AESGCM:RSA+AES"


@dataclass(frozen=True)
class CaptureOptions:
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    legacy_rsa_kex: bool = False

    @property
    def cipher_list(self) -> str:
        if self.legacy_rsa_kex:
            return f"{MODERN_CIPHERS}:{LEGACY_RSA_KEX_CIPHERS}"
        return MODERN_CIPHERS


def _to_der(cert: crypto.X509) -> bytes:
    return cert.to_cryptography().public_bytes(serialization.Encoding.DER)


class ChainInterceptor:
    """
    pyOpenSSL verify callback that captures the peer's chain mid-handshake.

    OpenSSL calls it once per certificate (and once more per error), ending at
    depth 0. On the first depth-0 call the presented chain is snapshotted and
    passed to ``on_chain``. The callback always answers "continue": whether the
    chain is trusted is reported by ``on_chain``'s result and never decides the
    fate of the connection.
    """

    def __init__(self, on_chain: Callable[[RawCertificateChain], Evaluation]) -> None:
        self._on_chain = on_chain
        self._seen: dict[int, bytes] = {}
        self.chain: RawCertificateChain | None = None
        self.evaluation: Evaluation | None = None
        self.error: InspectorError | None = None

    def __call__(self, conn: SSL.Connection, cert: crypto.X509, errno: int, depth: int, ok: int) -> bool:
        self._seen.setdefault(depth, _to_der(cert))
        if depth == 0 and self.chain is None:
            self.chain = self._snapshot(conn)
            logger.debug("captured %d certificate(s)", len(self.chain))
            try:
                self.evaluation = self._on_chain(self.chain)
            except InspectorError as e:
                self.error = e
        return True

    def _snapshot(self, conn: SSL.Connection) -> RawCertificateChain:
        presented = conn.get_peer_cert_chain()
        if presented:
            return RawCertificateChain(tuple(_to_der(c) for c in presented))
        # Only the chain OpenSSL managed to build is known here.
        logger.debug("peer chain not exposed yet, using the %d certificate(s) seen by the verifier", len(self._seen))
        return RawCertificateChain(tuple(self._seen[d] for d in sorted(self._seen)))


def build_context(options: CaptureOptions, interceptor: ChainInterceptor) -> SSL.Context:
    ctx = SSL.Context(SSL.TLS_CLIENT_METHOD)
    ctx.set_min_proto_version(SSL.TLS1_2_VERSION)
    ctx.set_cipher_list(options.cipher_list.encode("ascii"))
    ctx.set_verify(SSL.VERIFY_PEER, interceptor)
    return ctx


def encode_server_name(name: str) -> bytes:
    """Server name as sent in the SNI extension (A-labels)."""
    if name.isascii():
        return name.encode("ascii")
    try:
        return idna.encode(name, uts46=True)
    except (idna.IDNAError, UnicodeError) as e:
        raise TargetError(f"invalid server name {name!r}: {e}") from e


def _describe(error: Exception) -> str:
    if isinstance(error, SSL.Error) and error.args and isinstance(error.args[0], list):
        reasons = [entry[-1] for entry in error.args[0] if entry]
        if reasons:
            return ", ".join(str(r) for r in reasons)
    return str(error) or error.__class__.__name__


def _connect(target: ConnectionTarget, timeout: float) -> socket.socket:
    try:
        return socket.create_connection((target.host, target.port), timeout=timeout)
    except TimeoutError as e:
        raise HandshakeTimeoutError(f"connecting to {target} timed out after {timeout:g}s") from e
    except OSError as e:
        raise TransportError(f"cannot connect to {target}: {e}") from e


def _wait(sock: socket.socket, deadline: float, *, write: bool) -> None:
    remaining = deadline - time.monotonic()
    if remaining > 0:
        if write:
            _, ready, _ = select.select([], [sock], [], remaining)
        else:
            ready, _, _ = select.select([sock], [], [], remaining)
        if ready:
            return
    raise HandshakeTimeoutError("TLS handshake timed out")


def _handshake(conn: SSL.Connection, sock: socket.socket, deadline: float) -> None:
    # The socket carries a timeout, so OpenSSL sees it as non-blocking.
    while True:
        try:
            conn.do_handshake()
            return
        except SSL.WantReadError:
            _wait(sock, deadline, write=False)
        except SSL.WantWriteError:
            _wait(sock, deadline, write=True)


def _close(conn: SSL.Connection | None, sock: socket.socket) -> None:
    if conn is not None:
        try:
            conn.shutdown()
        except (SSL.Error, OSError) as e:
            logger.debug("ignoring error during TLS shutdown: %s", _describe(e))
    sock.close()


def capture_chain(
    target: ConnectionTarget,
    evaluate: Callable[[RawCertificateChain], Evaluation],
    options: CaptureOptions | None = None,
) -> Inspection:
    """
    Handshake with ``target``, capture the presented chain and evaluate it.

    The session is closed as soon as the handshake ends. Failures before the
    chain was seen raise TransportError; failures after it are kept on the
    returned Inspection.
    """
    options = options or CaptureOptions()
    interceptor = ChainInterceptor(evaluate)
    ctx = build_context(options, interceptor)
    server_name = encode_server_name(target.server_name) if target.sends_sni else None

    logger.info("Dial %s (server name %s)", target, target.server_name if server_name else "not sent")
    sock = _connect(target, options.timeout_seconds)
    deadline = time.monotonic() + options.timeout_seconds

    conn: SSL.Connection | None = None
    tls_version = cipher = handshake_error = None
    try:
        conn = SSL.Connection(ctx, sock)
        if server_name is not None:
            conn.set_tlsext_host_name(server_name)
        conn.set_connect_state()
        _handshake(conn, sock, deadline)
        tls_version = conn.get_protocol_version_name()
        cipher = conn.get_cipher_name()
    except (SSL.Error, OSError, HandshakeTimeoutError) as e:
        if interceptor.chain is None:
            if isinstance(e, HandshakeTimeoutError):
                raise
            raise TransportError(f"TLS handshake with {target} failed: {_describe(e)}") from e
        # e.g. the server insists on a client certificate; the chain is already ours.
        handshake_error = _describe(e)
        logger.warning("handshake did not complete after capture: %s", handshake_error)
    finally:
        _close(conn, sock)

    if interceptor.error is not None:
        raise interceptor.error
    if interceptor.chain is None or interceptor.evaluation is None:
        raise EmptyChainError(f"{target} presented no certificates")

    return Inspection(
        target=target,
        chain=interceptor.chain,
        evaluation=interceptor.evaluation,
        tls_version=tls_version,
        cipher=cipher,
        handshake_error=handshake_error,
    )


def inspect_target(
    target: ConnectionTarget,
    roots: TrustRootSet,
    options: CaptureOptions | None = None,
    *,
    verify_hostname: bool = True,
    now: datetime | None = None,
) -> Inspection:
    """Capture and evaluate ``target``'s chain against ``roots``, expecting its server name."""
    hostname = target.server_name if verify_hostname else None

    def evaluate(chain: RawCertificateChain) -> Evaluation:
        return evaluate_chain(chain, roots, hostname=hostname, now=now)

    return capture_chain(target, evaluate, options)
