# babylog/feature_flags.py
from __future__ import annotations

"""
Central place for deployment-wide switches.

We support two deployment modes:
- self-hosted (default): single family, unmetered, never write-blocked
- saas: multi-tenant, login and writes are gated on the account's billing facts

DEPLOYMENT_MODE missing or unknown is treated as self-hosted.
"""

import os
from typing import Optional

MODE_SAAS = "saas"
MODE_SELFHOSTED = "selfhosted"


def _env(name: str) -> Optional[str]:
    v = os.getenv(name)
    return v.strip() if v else None


def truthy(v: Optional[str]) -> bool:
    return (v or "").strip().lower() in ("1", "true", "yes", "on")


def env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def deployment_mode() -> str:
    mode = (_env("DEPLOYMENT_MODE") or "").lower()
    return MODE_SAAS if mode == MODE_SAAS else MODE_SELFHOSTED


def is_saas_mode() -> bool:
    return deployment_mode() == MODE_SAAS


def cookie_secure() -> bool:
    return truthy(_env("COOKIE_SECURE"))
