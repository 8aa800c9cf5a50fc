# babylog/entitlements.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from babylog.models import PLAN_LIFETIME, PLAN_SUBSCRIPTION

STATUS_ACTIVE = "active"
STATUS_TRIAL = "trial"
STATUS_EXPIRED = "expired"
STATUS_CLOSED = "closed"
STATUS_NO_FAMILY = "no_family"

EXPIRATION_TRIAL = "TRIAL_EXPIRED"
EXPIRATION_PLAN = "PLAN_EXPIRED"
EXPIRATION_NO_PLAN = "NO_PLAN"


def utcnow() -> datetime:
    # Naive UTC everywhere, matching what the DateTime columns store
    return datetime.now(timezone.utc).replace(tzinfo=None)


Clock = Callable[[], datetime]


def parse_dt(value: Any) -> Optional[datetime]:
    """
    Accepts datetime, ISO string, or None.
    Returns a naive UTC datetime, or None if the value can't be read.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class EntitlementSnapshot:
    """
    Billing facts as of token issue. Carried inside the session token so
    ordinary requests don't need a storage round trip; may be up to one token
    lifetime stale. Anything time-dependent is re-derived from these dates on
    every request, never stored as a boolean.
    """

    trial_ends: Optional[datetime] = None
    plan_expires: Optional[datetime] = None
    plan_type: Optional[str] = None
    beta_participant: bool = False

    @classmethod
    def from_account(cls, account) -> "EntitlementSnapshot":
        return cls(
            trial_ends=parse_dt(getattr(account, "trial_ends", None)),
            plan_expires=parse_dt(getattr(account, "plan_expires", None)),
            plan_type=getattr(account, "plan_type", None) or None,
            beta_participant=bool(getattr(account, "beta_participant", False)),
        )

    def to_claims(self) -> dict:
        return {
            "trialEnds": _iso(self.trial_ends),
            "planExpires": _iso(self.plan_expires),
            "planType": self.plan_type,
            "betaParticipant": self.beta_participant,
        }

    @classmethod
    def from_claims(cls, claims: dict) -> "EntitlementSnapshot":
        return cls(
            trial_ends=parse_dt(claims.get("trialEnds")),
            plan_expires=parse_dt(claims.get("planExpires")),
            plan_type=claims.get("planType") or None,
            beta_participant=bool(claims.get("betaParticipant", False)),
        )


@dataclass(frozen=True)
class AccountFacts:
    closed: bool = False
    beta_participant: bool = False
    plan_type: Optional[str] = None
    plan_expires: Optional[datetime] = None
    trial_ends: Optional[datetime] = None

    @classmethod
    def from_account(cls, account) -> "AccountFacts":
        return cls(
            closed=bool(getattr(account, "closed", False)),
            beta_participant=bool(getattr(account, "beta_participant", False)),
            plan_type=getattr(account, "plan_type", None) or None,
            plan_expires=parse_dt(getattr(account, "plan_expires", None)),
            trial_ends=parse_dt(getattr(account, "trial_ends", None)),
        )

    @classmethod
    def from_snapshot(cls, snapshot: EntitlementSnapshot) -> "AccountFacts":
        return cls(
            closed=False,
            beta_participant=snapshot.beta_participant,
            plan_type=snapshot.plan_type,
            plan_expires=snapshot.plan_expires,
            trial_ends=snapshot.trial_ends,
        )


@dataclass(frozen=True)
class StatusResult:
    status: str
    active: bool


def _plan_active(facts: AccountFacts, now: datetime) -> bool:
    if facts.plan_type == PLAN_LIFETIME:
        return True
    if facts.plan_type == PLAN_SUBSCRIPTION:
        # Inclusive: a plan expiring exactly now is still active
        return facts.plan_expires is not None and now <= facts.plan_expires
    return False


def resolve_status(
    facts: AccountFacts,
    has_family: bool,
    now: Optional[datetime] = None,
) -> StatusResult:
    """
    Turn raw billing facts into (status, active). First match wins:

      1) closed                      -> closed / inactive
      2) no family yet               -> no_family / paid plan or beta only
                                        (a trial is not a paid subscription)
      3) trial_ends set              -> trial or expired, never "active"
      4) lifetime plan               -> active, no expiry check
      5) subscription                -> active iff now <= plan_expires
                                        (missing expiry = expired)
      6) beta participant            -> active
      7) anything else               -> expired

    "active" means paying. It is not the same as "may write": a live trial
    writes freely (see write_guard.py).
    """
    now = now or utcnow()

    if facts.closed:
        return StatusResult(STATUS_CLOSED, False)

    if not has_family:
        active = _plan_active(facts, now) or facts.beta_participant
        return StatusResult(STATUS_NO_FAMILY, active)

    if facts.trial_ends is not None:
        if now > facts.trial_ends:
            return StatusResult(STATUS_EXPIRED, False)
        return StatusResult(STATUS_TRIAL, False)

    if facts.plan_type == PLAN_LIFETIME:
        return StatusResult(STATUS_ACTIVE, True)

    if facts.plan_type == PLAN_SUBSCRIPTION:
        if _plan_active(facts, now):
            return StatusResult(STATUS_ACTIVE, True)
        return StatusResult(STATUS_EXPIRED, False)

    if facts.beta_participant:
        return StatusResult(STATUS_ACTIVE, True)

    return StatusResult(STATUS_EXPIRED, False)


def is_entitlement_expired(
    snapshot: Optional[EntitlementSnapshot],
    now: Optional[datetime] = None,
) -> bool:
    """
    Has the family's access lapsed? Lifetime and beta are irrevocable grants
    and never time-checked; everything else defers to resolve_status.
    No snapshot at all (family without an account) is never expired.
    """
    if snapshot is None:
        return False
    if snapshot.beta_participant or snapshot.plan_type == PLAN_LIFETIME:
        return False
    result = resolve_status(AccountFacts.from_snapshot(snapshot), has_family=True, now=now)
    return result.status == STATUS_EXPIRED


@dataclass(frozen=True)
class ExpirationInfo:
    type: str
    date: Optional[datetime] = None

    def to_dict(self, family_slug: Optional[str] = None) -> dict:
        return {"type": self.type, "date": _iso(self.date), "familySlug": family_slug}


def expiration_info(snapshot: EntitlementSnapshot) -> ExpirationInfo:
    """
    Which lapse is it? Drives the upgrade-prompt wording.
    """
    if snapshot.trial_ends is not None:
        return ExpirationInfo(EXPIRATION_TRIAL, snapshot.trial_ends)
    if snapshot.plan_expires is not None:
        return ExpirationInfo(EXPIRATION_PLAN, snapshot.plan_expires)
    return ExpirationInfo(EXPIRATION_NO_PLAN)

