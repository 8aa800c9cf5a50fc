# babylog/routers/accounts.py
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from babylog import schemas, store
from babylog.auth import AuthContext, client_origin, get_clock, require_account
from babylog.authenticator import CredentialAuthenticator
from babylog.database import get_db
from babylog.dependencies import get_authenticator
from babylog.entitlements import AccountFacts, resolve_status
from babylog.tokens import issue_token

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


# -------------------------------------------------
# ACCOUNT HOLDER LOGIN
# -------------------------------------------------
@router.post("/login", response_model=schemas.AccountLoginOut)
def account_login(
    payload: schemas.AccountLoginIn,
    request: Request,
    db: Session = Depends(get_db),
    authenticator: CredentialAuthenticator = Depends(get_authenticator),
):
    creds = schemas.AccountLogin(email=payload.email or "", password=payload.password or "")
    result = authenticator.authenticate(creds, client_origin(request))

    token = issue_token(result.principal, result.entitlement)

    account = store.get_account(db, result.principal.account_id)
    family = account.family
    return {
        "success": True,
        "message": "Login successful",
        "token": token,
        "user": {
            "id": account.id,
            "email": account.email,
            "firstName": account.first_name or "",
            "lastName": account.last_name,
            "verified": bool(account.verified),
            "hasFamily": family is not None,
            "familyId": family.id if family else None,
            "familySlug": family.slug if family else None,
        },
    }


# -------------------------------------------------
# LIVE ACCOUNT STATUS
# -------------------------------------------------
@router.get("/status", response_model=schemas.AccountStatusOut)
def account_status(
    context: AuthContext = Depends(require_account),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """
    Reads the account straight from storage and ignores the token's
    snapshot, so someone who just renewed sees it before their token does.
    """
    account = store.get_account(db, context.principal.account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")

    family = account.family
    result = resolve_status(AccountFacts.from_account(account), has_family=family is not None, now=clock())

    return {
        "accountId": account.id,
        "email": account.email,
        "firstName": account.first_name or "",
        "lastName": account.last_name,
        "verified": bool(account.verified),
        "hasFamily": family is not None,
        "familySlug": family.slug if family else None,
        "familyName": family.name if family else None,
        "betaParticipant": bool(account.beta_participant),
        "closed": bool(account.closed),
        "closedAt": account.closed_at,
        "planType": account.plan_type,
        "planExpires": account.plan_expires,
        "trialEnds": account.trial_ends,
        "subscriptionActive": result.active,
        "subscriptionId": account.subscription_id,
        "accountStatus": result.status,
    }
