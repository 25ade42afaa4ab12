from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timezone


def b64_der(der: bytes) -> str:
    return base64.b64encode(der).decode("ascii")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def der_to_pem(der: bytes, label: str = "CERTIFICATE") -> str:
    # Encoded straight from the bytes so undecodable entries can still be shown.
    body = b64_der(der)
    lines = [body[i : i + 64] for i in range(0, len(body), 64)]
    return "\n".join([f"-----BEGIN {label}-----", *lines, f"-----END {label}-----"]) + "\n"


def dt_to_utc_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def dt_to_text(dt: datetime) -> str:
    # e.g. "2025-03-01 12:00:00 +0000 UTC"
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S +0000 UTC")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
