# babylog/models.py
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base

# Reserved login id of the per-family system caretaker
SYSTEM_LOGIN_ID = "00"

# Values for FamilySettings.auth_type (NULL = not decided yet)
AUTH_TYPE_SYSTEM = "SYSTEM"
AUTH_TYPE_CARETAKER = "CARETAKER"

# Values for Account.plan_type
PLAN_SUBSCRIPTION = "sub"
PLAN_LIFETIME = "full"


def _uuid() -> str:
    return str(uuid.uuid4())


class Family(Base):
    __tablename__ = "families"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)

    # Slug is how clients route to a family: /<slug>/log
    slug: Mapped[str] = mapped_column(String(80), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    account = relationship("Account", back_populates="family", uselist=False)
    caretakers = relationship("Caretaker", back_populates="family")
    settings = relationship("FamilySettings", back_populates="family", uselist=False)


class Account(Base):
    """
    Paying account holder. Owns at most one family.

    The billing columns (trial_ends, plan_type, plan_expires, beta_participant)
    are the raw facts the entitlement resolver works from.
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)

    first_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False)

    # Billing / Plans (Stripe)
    # plan_type: "sub" (recurring) / "full" (lifetime) / NULL
    beta_participant: Mapped[bool] = mapped_column(Boolean, default=False)
    trial_ends: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    plan_type: Mapped[str | None] = mapped_column(String(10), nullable=True)
    plan_expires: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(80), nullable=True)

    closed: Mapped[bool] = mapped_column(Boolean, default=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    family_id: Mapped[str | None] = mapped_column(ForeignKey("families.id"), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    family = relationship("Family", back_populates="account")


class Caretaker(Base):
    __tablename__ = "caretakers"
    __table_args__ = (
        # One live caretaker per (family, login id). This is also what makes the
        # lazy system caretaker creation safe when two first logins race.
        Index(
            "uq_caretakers_family_login",
            "family_id",
            "login_id",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    family_id: Mapped[str | None] = mapped_column(ForeignKey("families.id"), nullable=True, index=True)

    login_id: Mapped[str] = mapped_column(String(2), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str | None] = mapped_column(String(80), nullable=True)

    # Values: "USER" | "ADMIN"
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="USER")
    security_pin: Mapped[str] = mapped_column(String(20), nullable=False)

    inactive: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    family = relationship("Family", back_populates="caretakers")


class FamilySettings(Base):
    __tablename__ = "family_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    family_id: Mapped[str | None] = mapped_column(ForeignKey("families.id"), unique=True, nullable=True)

    family_name: Mapped[str] = mapped_column(String(255), nullable=False, default="My Family")
    security_pin: Mapped[str] = mapped_column(String(20), nullable=False, default="111222")

    # NULL until the first successful login decides it
    auth_type: Mapped[str | None] = mapped_column(String(20), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    family = relationship("Family", back_populates="settings")


class AppConfig(Base):
    """
    Deployment-wide settings. admin_pass is stored encrypted (see encryption.py).
    """

    __tablename__ = "app_config"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    admin_pass: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Note(Base):
    __tablename__ = "notes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    family_id: Mapped[str] = mapped_column(ForeignKey("families.id"), nullable=False, index=True)

    # Principal id of whoever wrote it (caretaker, account or sysadmin)
    author_id: Mapped[str] = mapped_column(String(36), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(60), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
