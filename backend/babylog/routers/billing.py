# babylog/routers/billing.py
from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from babylog import models, schemas, store
from babylog.auth import AuthContext, get_clock, require_account, require_owner
from babylog.database import get_db
from babylog.entitlements import AccountFacts, resolve_status
from babylog.feature_flags import is_saas_mode

logger = logging.getLogger(__name__)

# All payment endpoints live under /api/accounts/payments
router = APIRouter(prefix="/api/accounts/payments", tags=["billing"])

LIFETIME_YEARS = 100


# -----------------------------
# Hosted mode only
# -----------------------------
def _require_saas() -> None:
    if not is_saas_mode():
        raise HTTPException(status_code=503, detail="Billing is only available in hosted mode")


# -----------------------------
# Stripe config helpers
# -----------------------------
def _get_base_url() -> str:
    base = (os.getenv("APP_BASE_URL") or "").strip().rstrip("/")
    return base or "http://127.0.0.1:8000"


def _init_stripe() -> None:
    _require_saas()
    key = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    if not key:
        logger.error("STRIPE_SECRET_KEY is not set")
        raise HTTPException(status_code=500, detail="Stripe not configured (missing STRIPE_SECRET_KEY)")
    stripe.api_key = key


def _webhook_secret() -> str:
    wh = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if not wh:
        logger.error("STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(status_code=500, detail="Missing STRIPE_WEBHOOK_SECRET")
    return wh


def _price_id(plan_type: str) -> str:
    env_name = "STRIPE_PRICE_LIFETIME" if plan_type == models.PLAN_LIFETIME else "STRIPE_PRICE_MONTHLY"
    pid = (os.getenv(env_name) or "").strip()
    if not pid:
        raise HTTPException(status_code=500, detail=f"Missing {env_name}")
    return pid


def _unix_to_dt(v: Optional[int]) -> Optional[datetime]:
    if not v:
        return None
    return datetime.fromtimestamp(int(v), timezone.utc).replace(tzinfo=None)


def _period_end(sub) -> Optional[datetime]:
    """
    current_period_end moved from the subscription onto its items in newer
    Stripe API versions; read whichever is there.
    """
    end = sub.get("current_period_end")
    if not end:
        items = (sub.get("items") or {}).get("data") or []
        if items:
            end = items[0].get("current_period_end")
    return _unix_to_dt(end)


# -----------------------------
# Status (live account facts)
# -----------------------------
@router.get("/subscription-status")
def subscription_status(
    context: AuthContext = Depends(require_account),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    _require_saas()

    account = store.get_account(db, context.principal.account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")

    result = resolve_status(AccountFacts.from_account(account), has_family=account.family_id is not None, now=clock())
    return {
        "success": True,
        "data": {
            "accountStatus": result.status,
            "subscriptionActive": result.active,
            "planType": account.plan_type,
            "planExpires": account.plan_expires,
            "trialEnds": account.trial_ends,
            "subscriptionId": account.subscription_id,
            "betaParticipant": bool(account.beta_participant),
        },
    }


# -----------------------------
# Checkout (account owner)
# -----------------------------
@router.post("/create-checkout-session")
def create_checkout_session(
    payload: schemas.CheckoutIn,
    context: AuthContext = Depends(require_account),
    _owner: AuthContext = Depends(require_owner),
    db: Session = Depends(get_db),
):
    _init_stripe()

    account = store.get_account(db, context.principal.account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    if account.closed:
        raise HTTPException(status_code=400, detail="This account has been closed")

    plan_type = payload.planType
    metadata = {"accountId": account.id, "planType": plan_type}

    try:
        if not account.stripe_customer_id:
            customer = stripe.Customer.create(email=account.email, metadata={"accountId": account.id})
            account.stripe_customer_id = customer["id"]
            db.commit()

        base = _get_base_url()
        params = {
            "mode": "payment" if plan_type == models.PLAN_LIFETIME else "subscription",
            "customer": account.stripe_customer_id,
            "line_items": [{"price": _price_id(plan_type), "quantity": 1}],
            "success_url": f"{base}/account/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{base}/account/payment-cancelled",
            "metadata": metadata,
        }
        if plan_type == models.PLAN_SUBSCRIPTION:
            params["subscription_data"] = {"metadata": metadata}

        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as e:
        logger.error("Stripe checkout failed for account %s: %s", account.id, e)
        raise HTTPException(status_code=502, detail="Could not start checkout") from e

    logger.info("Checkout session %s created for account %s (%s)", session["id"], account.id, plan_type)
    return {"success": True, "data": {"sessionId": session["id"], "url": session["url"]}}


# -----------------------------
# Verify checkout (payment success page)
# -----------------------------
def _cancel_replaced_subscription(account: models.Account) -> None:
    """
    A lifetime purchase replaces any running subscription. The upgrade is
    applied even when Stripe refuses the cancel.
    """
    try:
        stripe.Subscription.cancel(account.subscription_id)
        logger.info("Cancelled subscription %s replaced by lifetime plan (account %s)", account.subscription_id, account.id)
    except stripe.StripeError as e:
        logger.error(
            "Could not cancel subscription %s replaced by lifetime plan (account %s): %s",
            account.subscription_id,
            account.id,
            e,
        )


@router.post("/verify-session")
def verify_session(
    payload: schemas.VerifySessionIn,
    context: AuthContext = Depends(require_account),
    _owner: AuthContext = Depends(require_owner),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """
    Applies a paid checkout right away instead of waiting for the webhook,
    so the account is current by the time the user is back in the app.
    """
    _init_stripe()

    account = store.get_account(db, context.principal.account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")

    try:
        session = stripe.checkout.Session.retrieve(payload.sessionId)
    except stripe.StripeError as e:
        logger.error("Could not retrieve checkout session %s: %s", payload.sessionId, e)
        raise HTTPException(status_code=502, detail="Could not verify checkout session") from e

    md = session.get("metadata") or {}
    if md.get("accountId") != account.id:
        raise HTTPException(status_code=403, detail="Session does not belong to this account")
    if session.get("payment_status") != "paid":
        raise HTTPException(status_code=400, detail="Payment not completed")

    plan_type = md.get("planType")
    if plan_type not in (models.PLAN_SUBSCRIPTION, models.PLAN_LIFETIME):
        raise HTTPException(status_code=400, detail="Invalid plan type in session")
    if plan_type == models.PLAN_SUBSCRIPTION and not session.get("subscription"):
        raise HTTPException(status_code=400, detail="Subscription not found")

    if plan_type == models.PLAN_LIFETIME and account.subscription_id:
        _cancel_replaced_subscription(account)

    try:
        _apply_checkout_completed(account, session, clock())
    except stripe.StripeError as e:
        db.rollback()
        logger.error("Stripe lookup failed verifying session %s for account %s: %s", payload.sessionId, account.id, e)
        raise HTTPException(status_code=502, detail="Could not verify checkout session") from e

    db.commit()
    logger.info("Verified checkout session %s for account %s (%s)", payload.sessionId, account.id, plan_type)
    return {"success": True, "data": {"planType": account.plan_type, "subscriptionId": account.subscription_id}}


# -----------------------------
# Cancel (at period end)
# -----------------------------
@router.post("/cancel-subscription")
def cancel_subscription(
    context: AuthContext = Depends(require_account),
    _owner: AuthContext = Depends(require_owner),
    db: Session = Depends(get_db),
):
    """
    Stops renewal. plan_expires is left alone, so access lasts until the
    paid period ends; the subscription.deleted webhook drops the link later.
    """
    _init_stripe()

    account = store.get_account(db, context.principal.account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    if not account.subscription_id:
        raise HTTPException(status_code=400, detail="No active subscription found")
    if account.plan_type == models.PLAN_LIFETIME:
        raise HTTPException(status_code=400, detail="Lifetime plans cannot be cancelled")

    try:
        sub = stripe.Subscription.modify(account.subscription_id, cancel_at_period_end=True)
    except stripe.StripeError as e:
        if getattr(e, "code", None) == "resource_missing":
            logger.warning("Subscription %s no longer exists in Stripe (account %s)", account.subscription_id, account.id)
            account.subscription_id = None
            db.commit()
            raise HTTPException(status_code=404, detail="Subscription not found in payment system") from e
        logger.error("Stripe cancel failed for account %s: %s", account.id, e)
        raise HTTPException(status_code=502, detail="Could not cancel subscription") from e

    access_until = _period_end(sub) or account.plan_expires
    logger.info("Subscription %s set to cancel at period end (account %s)", account.subscription_id, account.id)

    until = access_until.date().isoformat() if access_until else "the end of your billing period"
    return {
        "success": True,
        "data": {
            "message": f"Subscription cancelled. You will have access until {until}",
            "accessUntil": access_until,
        },
    }


# -----------------------------
# Webhook (public, signature-verified)
# -----------------------------
def _find_account(db: Session, obj: dict) -> Optional[models.Account]:
    md = obj.get("metadata") or {}
    account_id = (md.get("accountId") or "").strip()
    if account_id:
        account = store.get_account(db, account_id)
        if account:
            return account

    customer_id = (obj.get("customer") or "").strip()
    if customer_id:
        account = db.scalar(select(models.Account).where(models.Account.stripe_customer_id == customer_id))
        if account:
            return account

    sub_id = (obj.get("subscription") or "").strip()
    if sub_id:
        return db.scalar(select(models.Account).where(models.Account.subscription_id == sub_id))
    return None


def _apply_checkout_completed(account: models.Account, obj: dict, now: datetime) -> None:
    plan_type = (obj.get("metadata") or {}).get("planType")
    customer_id = (obj.get("customer") or "").strip()
    if customer_id and not account.stripe_customer_id:
        account.stripe_customer_id = customer_id

    if plan_type == models.PLAN_LIFETIME:
        account.plan_type = models.PLAN_LIFETIME
        account.plan_expires = now + timedelta(days=365 * LIFETIME_YEARS)
        account.trial_ends = None
        account.subscription_id = None
        return

    sub_id = (obj.get("subscription") or "").strip()
    if not sub_id:
        logger.warning("checkout.session.completed without subscription for account %s", account.id)
        return

    sub = stripe.Subscription.retrieve(sub_id)
    account.plan_type = models.PLAN_SUBSCRIPTION
    account.subscription_id = sub_id
    account.plan_expires = _period_end(sub)
    account.trial_ends = None


def _apply_subscription(account: models.Account, sub: dict) -> None:
    account.subscription_id = sub.get("id") or account.subscription_id
    if account.plan_type != models.PLAN_LIFETIME:
        account.plan_type = models.PLAN_SUBSCRIPTION
        account.plan_expires = _period_end(sub)
        account.trial_ends = None


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    _init_stripe()
    wh_secret = _webhook_secret()

    payload = await request.body()
    sig = request.headers.get("stripe-signature")
    if not sig:
        raise HTTPException(status_code=400, detail="Missing Stripe signature header")

    try:
        event = stripe.Webhook.construct_event(payload=payload, sig_header=sig, secret=wh_secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Rejected Stripe webhook: %s", e)
        raise HTTPException(status_code=400, detail="Invalid Stripe webhook signature") from e

    etype = (event.get("type") or "").strip()
    obj = event.get("data", {}).get("object", {}) or {}

    account = _find_account(db, obj)
    if not account:
        logger.info("Stripe event %s did not match any account", etype)
        return {"received": True, "ignored": True, "type": etype}

    try:
        if etype == "checkout.session.completed":
            _apply_checkout_completed(account, obj, clock())

        elif etype in ("customer.subscription.created", "customer.subscription.updated"):
            _apply_subscription(account, obj)

        elif etype == "customer.subscription.deleted":
            # Access runs out at plan_expires; only the link to Stripe goes
            account.subscription_id = None

        elif etype == "invoice.payment_succeeded":
            sub_id = (obj.get("subscription") or "").strip() or (account.subscription_id or "")
            if sub_id:
                _apply_subscription(account, stripe.Subscription.retrieve(sub_id))

        elif etype == "invoice.payment_failed":
            # Stripe retries the charge; access runs until plan_expires regardless
            logger.warning(
                "Payment failed for account %s (subscription %s, invoice %s)",
                account.id,
                obj.get("subscription") or account.subscription_id,
                obj.get("id"),
            )

        else:
            return {"received": True, "ignored": True, "type": etype}
    except stripe.StripeError as e:
        db.rollback()
        logger.error("Stripe lookup failed while handling %s for account %s: %s", etype, account.id, e)
        raise HTTPException(status_code=502, detail="Stripe lookup failed") from e

    db.commit()
    logger.info("Applied Stripe event %s to account %s", etype, account.id)
    return {"received": True, "type": etype}
