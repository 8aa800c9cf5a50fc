# babylog/auth.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Depends, HTTPException, Request
from passlib.context import CryptContext

from babylog.auth_errors import AuthenticationRequired, TokenInvalid
from babylog.entitlements import EntitlementSnapshot, is_entitlement_expired, utcnow
from babylog.feature_flags import cookie_secure, is_saas_mode
from babylog.principal import ROLE_OWNER, Principal
from babylog.tokens import TokenClaims, verify_token

# Force bcrypt import early (stability)
try:
    import bcrypt  # noqa: F401
except ImportError:
    pass

# -------------------------------------------------------------------
# Password hashing (account holders)
# -------------------------------------------------------------------
pwd_context = CryptContext(
    schemes=["bcrypt_sha256", "bcrypt"],
    deprecated="auto",
)

LEGACY_COOKIE_NAME = "caretakerId"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Unrecognised hash format in the row: treat as a mismatch
        return False


# -------------------------------------------------------------------
# Request helpers
# -------------------------------------------------------------------
def client_origin(request: Request) -> str:
    """
    Network origin the login limiter keys on:
      X-Forwarded-For (first hop) -> X-Real-IP -> peer address
    """
    forwarded = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def bearer_token(request: Request) -> Optional[str]:
    """
    Reads "Authorization: Bearer <token>". Returns None when absent; a header
    that is present but not a bearer token is an invalid token, not a
    missing one.
    """
    auth_header = (request.headers.get("Authorization") or "").strip()
    if not auth_header:
        return None

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise TokenInvalid()
    return parts[1].strip()


def set_legacy_cookie(response, principal_id: str, max_age: int) -> None:
    """
    Older clients still read the caretakerId cookie. It never authenticates
    anything; the bearer header is authoritative.
    """
    response.set_cookie(
        LEGACY_COOKIE_NAME,
        principal_id,
        httponly=True,
        secure=cookie_secure(),
        samesite="strict",
        max_age=max_age,
        path="/",
    )


# -------------------------------------------------------------------
# Authenticated context
# -------------------------------------------------------------------
@dataclass(frozen=True)
class AuthContext:
    """
    What a handler knows about the caller. is_expired is computed live from
    the token's entitlement snapshot against the clock; it is only ever True
    in saas mode.
    """

    authenticated: bool
    principal: Optional[Principal] = None
    entitlement: Optional[EntitlementSnapshot] = None
    is_expired: bool = False
    error: Optional[str] = None

    @classmethod
    def anonymous(cls, error: str = "Authentication required") -> "AuthContext":
        return cls(authenticated=False, error=error)

    @property
    def principal_kind(self) -> Optional[str]:
        return self.principal.kind if self.principal else None

    @property
    def principal_id(self) -> Optional[str]:
        return self.principal.id if self.principal else None

    @property
    def role(self) -> Optional[str]:
        return self.principal.role if self.principal else None

    @property
    def family_id(self) -> Optional[str]:
        return self.principal.family_id if self.principal else None

    @property
    def family_slug(self) -> Optional[str]:
        return self.principal.family_slug if self.principal else None

    @property
    def is_account_auth(self) -> bool:
        return bool(self.principal and self.principal.is_account)

    @property
    def is_sys_admin(self) -> bool:
        return bool(self.principal and self.principal.is_sysadmin)


def context_from_claims(claims: TokenClaims, now: Optional[datetime] = None) -> AuthContext:
    principal = claims.principal
    expired = False
    if is_saas_mode() and not principal.is_sysadmin and principal.family_id:
        expired = is_entitlement_expired(claims.entitlement, now or utcnow())

    return AuthContext(
        authenticated=True,
        principal=principal,
        entitlement=claims.entitlement,
        is_expired=expired,
    )


# -------------------------------------------------------------------
# Dependencies
# -------------------------------------------------------------------
def get_clock():
    """Overridable in tests: returns the callable handlers use for 'now'."""
    return utcnow


def get_optional_auth_context(request: Request, clock=Depends(get_clock)) -> AuthContext:
    """
    Anonymous context when no token is sent; a token that is sent must be
    valid (TokenInvalid / TokenExpired otherwise).
    """
    token = bearer_token(request)
    if token is None:
        return AuthContext.anonymous()
    return context_from_claims(verify_token(token), clock())


def get_auth_context(context: AuthContext = Depends(get_optional_auth_context)) -> AuthContext:
    """
    Any valid session, expired entitlement or not. Read handlers use this
    directly; mutating handlers go through write_guard.require_write_access.
    """
    if not context.authenticated:
        raise AuthenticationRequired()
    return context


def require_account(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not context.is_account_auth or not context.principal.account_id:
        raise HTTPException(status_code=403, detail="Account authentication required")
    return context


def require_admin(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """
    OWNER / ADMIN / SYSADMIN pass.
    """
    if not context.principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return context


def require_owner(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if context.role != ROLE_OWNER:
        raise HTTPException(status_code=403, detail="Owner privileges required")
    return context
