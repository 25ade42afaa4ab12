"""Capture the certificate chain a TLS server presents and explain whether it is trusted."""

__version__ = "0.2.0"
