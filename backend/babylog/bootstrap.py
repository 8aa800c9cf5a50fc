# babylog/bootstrap.py
from __future__ import annotations

"""
First-run seed for an empty database.

Creates the default family with its settings and system caretaker, plus the
app_config row holding the system administrator password. Runs at startup;
does nothing once any family exists.
"""

import logging
import os
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from babylog import encryption, models, store
from babylog.feature_flags import truthy

logger = logging.getLogger(__name__)

DEFAULT_FAMILY_NAME = "My Family"
DEFAULT_FAMILY_SLUG = "my-family"
DEFAULT_SECURITY_PIN = "111222"


def _env(name: str) -> Optional[str]:
    v = os.getenv(name)
    return v.strip() if v else None


def seed_enabled() -> bool:
    # On unless explicitly switched off
    raw = _env("SEED_DEFAULTS")
    return raw is None or truthy(raw)


def _stored_admin_password(plaintext: str) -> str:
    if not _env("ENC_HASH"):
        logger.warning("ENC_HASH is not set; admin password stored unencrypted")
        return plaintext
    return encryption.encrypt(plaintext)


def seed_defaults(db: Session) -> bool:
    """
    Returns True if anything was created.
    """
    if db.scalar(select(func.count()).select_from(models.Family)):
        return False

    family = models.Family(slug=DEFAULT_FAMILY_SLUG, name=DEFAULT_FAMILY_NAME, is_active=True)
    db.add(family)
    db.flush()

    settings = models.FamilySettings(
        family_id=family.id,
        family_name=DEFAULT_FAMILY_NAME,
        security_pin=DEFAULT_SECURITY_PIN,
    )
    db.add(settings)

    if store.get_app_config(db) is None:
        admin_password = _env("ADMIN_PASSWORD")
        if admin_password:
            db.add(models.AppConfig(admin_pass=_stored_admin_password(admin_password)))
        else:
            logger.warning("ADMIN_PASSWORD is not set; system administrator login stays disabled")

    db.commit()
    store.get_or_create_system_caretaker(db, family, settings)

    logger.info("Seeded default family %s", family.slug)
    return True
