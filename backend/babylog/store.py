# babylog/store.py
from __future__ import annotations

"""
Point lookups and single-row writes the login flow needs.

Nothing here spans more than one statement except the lazy system caretaker
creation, which leans on the (family_id, login_id) unique index to stay
idempotent when two first logins race.
"""

import logging
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from babylog import models

logger = logging.getLogger(__name__)


# -------------------------------------------------------------------
# Families / accounts
# -------------------------------------------------------------------
def get_active_family_by_slug(db: Session, slug: str) -> Optional[models.Family]:
    slug = (slug or "").strip()
    if not slug:
        return None
    return db.scalar(
        select(models.Family).where(models.Family.slug == slug, models.Family.is_active == True)  # noqa: E712
    )


def get_account(db: Session, account_id: str) -> Optional[models.Account]:
    return db.get(models.Account, account_id)


def get_account_by_email(db: Session, email: str) -> Optional[models.Account]:
    email_n = (email or "").strip().lower()
    if not email_n:
        return None
    return db.scalar(select(models.Account).where(models.Account.email == email_n))


def get_app_config(db: Session) -> Optional[models.AppConfig]:
    return db.scalar(select(models.AppConfig).limit(1))


# -------------------------------------------------------------------
# Settings
# -------------------------------------------------------------------
def get_settings(db: Session, family_id: Optional[str]) -> Optional[models.FamilySettings]:
    """
    Settings for a family; with no family (single-family self-hosted install)
    the first settings row.
    """
    stmt = select(models.FamilySettings)
    if family_id:
        stmt = stmt.where(models.FamilySettings.family_id == family_id)
    return db.scalar(stmt.order_by(models.FamilySettings.updated_at.asc()).limit(1))


def set_auth_type_if_unset(db: Session, settings_id: str, auth_type: str) -> bool:
    """
    Conditional write: only lands if nobody decided the mode first.
    Returns True if this call persisted it.
    """
    result = db.execute(
        update(models.FamilySettings)
        .where(models.FamilySettings.id == settings_id, models.FamilySettings.auth_type.is_(None))
        .values(auth_type=auth_type)
    )
    db.commit()
    return bool(result.rowcount)


# -------------------------------------------------------------------
# Caretakers
# -------------------------------------------------------------------
def _family_scope(stmt, family_id: Optional[str]):
    if family_id:
        stmt = stmt.where(models.Caretaker.family_id == family_id)
    return stmt


def count_regular_caretakers(db: Session, family_id: Optional[str]) -> int:
    """Live caretakers, not counting the reserved system caretaker."""
    stmt = select(func.count()).select_from(models.Caretaker).where(
        models.Caretaker.deleted_at.is_(None),
        models.Caretaker.login_id != models.SYSTEM_LOGIN_ID,
    )
    return int(db.execute(_family_scope(stmt, family_id)).scalar_one())


def find_caretaker(db: Session, family_id: Optional[str], login_id: str) -> Optional[models.Caretaker]:
    """Active, not soft-deleted caretaker by login id."""
    stmt = select(models.Caretaker).where(
        models.Caretaker.login_id == login_id,
        models.Caretaker.inactive == False,  # noqa: E712
        models.Caretaker.deleted_at.is_(None),
    )
    return db.scalar(_family_scope(stmt, family_id).limit(1))


def find_system_caretaker(db: Session, family_id: Optional[str]) -> Optional[models.Caretaker]:
    stmt = select(models.Caretaker).where(
        models.Caretaker.login_id == models.SYSTEM_LOGIN_ID,
        models.Caretaker.deleted_at.is_(None),
    )
    return db.scalar(_family_scope(stmt, family_id).limit(1))


def get_or_create_system_caretaker(
    db: Session,
    family: Optional[models.Family],
    settings: models.FamilySettings,
) -> Optional[models.Caretaker]:
    """
    Returns the family's system caretaker, creating it on first use.
    A settings row without a family only ever reuses an existing one; NULL
    family ids fall outside the unique index.
    If a concurrent login inserts it first, the unique index rejects our row
    and we re-read the winner.
    """
    family_id = family.id if family else None
    existing = find_system_caretaker(db, family_id)
    if existing:
        return existing
    if family_id is None:
        return None

    caretaker = models.Caretaker(
        family_id=family_id,
        login_id=models.SYSTEM_LOGIN_ID,
        name="system",
        type="System Administrator",
        role="ADMIN",
        security_pin=settings.security_pin,
        inactive=False,
    )
    try:
        db.add(caretaker)
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = find_system_caretaker(db, family_id)
        if winner is None:
            raise
        return winner

    db.refresh(caretaker)
    logger.info("Created system caretaker for family %s", family.slug)
    return caretaker
