# babylog/tokens.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from babylog.auth_errors import SystemNotConfigured, TokenExpired, TokenInvalid
from babylog.entitlements import EntitlementSnapshot, utcnow
from babylog.feature_flags import env_int, is_saas_mode
from babylog.principal import KIND_ACCOUNT, VALID_KINDS, Principal, normalize_role

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------
# Settings
# -------------------------------------------------------------------
ALGORITHM = "HS256"
DEV_SECRET_KEY = "babylog-dev-secret-change-me"

DEFAULT_AUTH_LIFE_SECONDS = 1800
DEFAULT_ACCOUNT_AUTH_LIFE_SECONDS = 43200


def _secret_key() -> str:
    key = (os.getenv("JWT_SECRET") or "").strip()
    if key:
        return key
    if is_saas_mode():
        logger.error("JWT_SECRET is not set; refusing to sign or verify tokens in saas mode")
        raise SystemNotConfigured()
    return DEV_SECRET_KEY


def session_lifetime_seconds(kind: str) -> int:
    if kind == KIND_ACCOUNT:
        return max(60, env_int("ACCOUNT_AUTH_LIFE", DEFAULT_ACCOUNT_AUTH_LIFE_SECONDS))
    return max(60, env_int("AUTH_LIFE", DEFAULT_AUTH_LIFE_SECONDS))


def _from_timestamp(value) -> datetime:
    return datetime.fromtimestamp(int(value), timezone.utc).replace(tzinfo=None)


# -------------------------------------------------------------------
# Claims
# -------------------------------------------------------------------
@dataclass(frozen=True)
class TokenClaims:
    principal: Principal
    entitlement: Optional[EntitlementSnapshot]
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenClaims":
        kind = payload["kind"]
        sub = payload["sub"]
        if kind not in VALID_KINDS or not isinstance(sub, str) or not sub:
            raise ValueError("Token missing required claims")

        principal = Principal(
            kind=kind,
            id=sub,
            name=str(payload.get("name") or ""),
            role=normalize_role(payload.get("role")),
            family_id=payload.get("familyId"),
            family_slug=payload.get("familySlug"),
            caretaker_type=payload.get("type"),
            account_id=payload.get("accountId"),
            account_email=payload.get("accountEmail"),
        )
        ent = payload.get("ent")
        if ent is not None and not isinstance(ent, dict):
            raise ValueError("Malformed entitlement claim")

        return cls(
            principal=principal,
            entitlement=EntitlementSnapshot.from_claims(ent) if ent is not None else None,
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
        )


# -------------------------------------------------------------------
# Issue / verify
# -------------------------------------------------------------------
def issue_token(
    principal: Principal,
    snapshot: Optional[EntitlementSnapshot] = None,
    *,
    now: Optional[datetime] = None,
    lifetime_seconds: Optional[int] = None,
) -> str:
    """
    Token claims:
      sub:          principal id
      kind:         CARETAKER / SYSTEM_CARETAKER / ACCOUNT / SYSADMIN
      name, role, type
      familyId, familySlug
      accountId, accountEmail   (account holders only)
      ent:          entitlement snapshot as of now (omitted when the family
                    has no billing account)
      iat, exp
    There is deliberately no "expired" flag: expiry is re-derived from `ent`
    against the clock on every request.
    """
    issued = now or utcnow()
    lifetime = lifetime_seconds or session_lifetime_seconds(principal.kind)

    payload = {
        "sub": principal.id,
        "kind": principal.kind,
        "name": principal.name,
        "role": principal.role,
        "type": principal.caretaker_type,
        "familyId": principal.family_id,
        "familySlug": principal.family_slug,
        "iat": issued,
        "exp": issued + timedelta(seconds=lifetime),
    }
    if principal.account_id:
        payload["accountId"] = principal.account_id
        payload["accountEmail"] = principal.account_email
    if snapshot is not None:
        payload["ent"] = snapshot.to_claims()

    return jwt.encode(payload, _secret_key(), algorithm=ALGORITHM)


def verify_token(token: Optional[str]) -> TokenClaims:
    """
    Returns the decoded claims or raises TokenInvalid / TokenExpired.
    Malformed input of any shape ends up as TokenInvalid.
    """
    if not token or not isinstance(token, str):
        raise TokenInvalid()

    key = _secret_key()
    try:
        payload = jwt.decode(token, key, algorithms=[ALGORITHM])
    except ExpiredSignatureError as e:
        raise TokenExpired() from e
    except JWTError as e:
        raise TokenInvalid() from e

    try:
        return TokenClaims.from_payload(payload)
    except (KeyError, TypeError, ValueError, OverflowError) as e:
        raise TokenInvalid() from e
