"""
Environment helpers: production mode detection and boolean flags.
"""
from __future__ import annotations

import os

_TRUTHY = {"1", "true", "yes", "on"}


def is_production_env() -> bool:
    """
    True when ENVIRONMENT or APP_ENV is "production" (case-insensitive).
    """
    for name in ("ENVIRONMENT", "APP_ENV"):
        if os.getenv(name, "").strip().lower() == "production":
            return True
    return False


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY
