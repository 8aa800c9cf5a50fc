# babylog/write_guard.py
from __future__ import annotations

"""
Soft expiration.

An expired family keeps its session and can read everything; only
state-changing handlers are refused. Self-hosted installs are never refused.

Mutating routes depend on require_write_access; read routes depend on
auth.get_auth_context and never come through here.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends

from babylog.auth import AuthContext, get_optional_auth_context
from babylog.auth_errors import AuthenticationRequired, AuthError, WriteBlocked
from babylog.entitlements import (
    EXPIRATION_NO_PLAN,
    EXPIRATION_PLAN,
    EXPIRATION_TRIAL,
    EntitlementSnapshot,
    expiration_info,
)
from babylog.feature_flags import is_saas_mode

EXPIRATION_MESSAGES = {
    EXPIRATION_TRIAL: "Your free trial has ended. Upgrade to continue tracking.",
    EXPIRATION_PLAN: "Your subscription has expired. Please renew to continue.",
    EXPIRATION_NO_PLAN: "No active subscription found. Please subscribe to continue.",
}


@dataclass(frozen=True)
class WritePermission:
    allowed: bool
    denial: Optional[AuthError] = None


def check_write_permission(context: AuthContext) -> WritePermission:
    if not context.authenticated:
        return WritePermission(False, AuthenticationRequired())

    if not is_saas_mode() or not context.is_expired:
        return WritePermission(True)

    info = expiration_info(context.entitlement or EntitlementSnapshot())
    denial = WriteBlocked(
        EXPIRATION_MESSAGES[info.type],
        data={"expirationInfo": info.to_dict(context.family_slug)},
    )
    return WritePermission(False, denial)


def require_write_access(context: AuthContext = Depends(get_optional_auth_context)) -> AuthContext:
    """
    Dependency version of check_write_permission.
    """
    permission = check_write_permission(context)
    if not permission.allowed:
        raise permission.denial
    return context
