# babylog/routers/auth.py
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response
from sqlalchemy.orm import Session

from babylog import schemas, store
from babylog.auth import AuthContext, client_origin, get_auth_context, set_legacy_cookie
from babylog.auth_errors import FamilyNotFound, InvalidCredentials, SystemNotConfigured, TokenInvalid
from babylog.authenticator import CredentialAuthenticator, account_principal, detect_auth_type
from babylog.database import get_db
from babylog.dependencies import get_authenticator
from babylog.entitlements import EntitlementSnapshot
from babylog.feature_flags import is_saas_mode
from babylog.tokens import issue_token, session_lifetime_seconds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# -------------------------------------------------
# CARETAKER / SYSTEM / ADMIN LOGIN
# -------------------------------------------------
@router.post("", response_model=schemas.AuthOut)
def login(
    request: Request,
    response: Response,
    payload: Any = Body(None),
    authenticator: CredentialAuthenticator = Depends(get_authenticator),
):
    """
    Body is one of:
      {"kind": "admin", "admin_password"}
      {"kind": "system_pin", "security_pin", "family_slug"}
      {"kind": "caretaker", "login_id", "security_pin", "family_slug"}
    or the older untagged {adminPassword | loginId + securityPin | securityPin, familySlug}.
    """
    result = authenticator.authenticate_payload(payload, client_origin(request))

    principal = result.principal
    lifetime = session_lifetime_seconds(principal.kind)
    token = issue_token(principal, result.entitlement, lifetime_seconds=lifetime)
    set_legacy_cookie(response, principal.id, lifetime)

    return {"success": True, "data": {**principal.to_public(), "token": token}}


# -------------------------------------------------
# LOGIN PAGE HINT
# -------------------------------------------------
@router.get("/caretaker-exists")
def caretaker_exists(
    familySlug: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """
    Tells the login page which form to show. Unknown slug -> 404.
    """
    family = None
    slug = (familySlug or "").strip()
    if slug:
        family = store.get_active_family_by_slug(db, slug)
        if family is None:
            raise FamilyNotFound()
    elif is_saas_mode():
        raise FamilyNotFound()

    settings = store.get_settings(db, family.id if family else None)
    if settings is None:
        logger.error("No family settings row found (family=%s)", slug or "(default)")
        raise SystemNotConfigured()

    family_id = family.id if family else settings.family_id
    regular = store.count_regular_caretakers(db, family_id)

    data = schemas.CaretakerExistsOut(
        hasCaretakers=regular > 0,
        authType=detect_auth_type(settings, regular),
        familySlug=family.slug if family else (settings.family.slug if settings.family else None),
    )
    return {"success": True, "data": data}


# -------------------------------------------------
# TOKEN REFRESH (account holders)
# -------------------------------------------------
@router.post("/refresh-token", response_model=schemas.TokenOut)
def refresh_token(
    context: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db),
):
    """
    Re-reads the account so the new token carries a fresh entitlement
    snapshot. This is how a renewal clears an "expired" token without a
    full re-login.
    """
    if not context.is_account_auth:
        raise HTTPException(status_code=400, detail="Token refresh is only available for account logins")

    account = store.get_account(db, context.principal.account_id or "")
    if account is None:
        raise TokenInvalid()
    if account.closed:
        raise InvalidCredentials("This account has been closed")

    token = issue_token(account_principal(account), EntitlementSnapshot.from_account(account))
    return {"success": True, "token": token}
