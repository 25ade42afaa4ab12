from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from .errors import InspectorError
from .fetch import DEFAULT_TIMEOUT_SECONDS


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Defaults for CLI flags. Command-line options always win."""
    timeout_seconds: float
    store: str
    legacy_rsa_kex: bool


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    timeout_s = os.getenv("TLS_CHAIN_INSPECTOR_TIMEOUT", str(DEFAULT_TIMEOUT_SECONDS))
    try:
        timeout = float(timeout_s)
    except ValueError as e:
        raise InspectorError(f"TLS_CHAIN_INSPECTOR_TIMEOUT must be a number, got {timeout_s!r}") from e

    return Settings(
        timeout_seconds=timeout,
        store=os.getenv("TLS_CHAIN_INSPECTOR_STORE", "system"),
        # Older servers only offer RSA key exchange, which the default cipher list refuses.
        legacy_rsa_kex=_env_flag("TLS_CHAIN_INSPECTOR_LEGACY_RSA_KEX"),
    )
