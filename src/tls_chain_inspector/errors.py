from __future__ import annotations


class InspectorError(Exception):
    """Base class for fatal conditions: the run has nothing to report."""


class TargetError(InspectorError):
    """The destination string could not be turned into a host and port."""


class TrustStoreError(InspectorError):
    """A trust-root bundle could not be read or decoded."""


class TransportError(InspectorError):
    """DNS, TCP or TLS failure before the peer's certificates were captured."""


class HandshakeTimeoutError(TransportError):
    pass


class CertificateParseError(InspectorError):
    """A presented certificate is not valid DER."""

    def __init__(self, index: int, reason: str) -> None:
        super().__init__(f"certificate #{index} could not be parsed: {reason}")
        self.index = index
        self.reason = reason


class EmptyChainError(InspectorError):
    """The peer completed the exchange without presenting any certificate."""
