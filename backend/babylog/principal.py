# babylog/principal.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

# -------------------------------------------------------------------
# Principal kinds
# -------------------------------------------------------------------
KIND_CARETAKER = "CARETAKER"
KIND_SYSTEM_CARETAKER = "SYSTEM_CARETAKER"
KIND_ACCOUNT = "ACCOUNT"
KIND_SYSADMIN = "SYSADMIN"
VALID_KINDS = {KIND_CARETAKER, KIND_SYSTEM_CARETAKER, KIND_ACCOUNT, KIND_SYSADMIN}

# -------------------------------------------------------------------
# Roles
# -------------------------------------------------------------------
ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"
ROLE_OWNER = "OWNER"
ROLE_SYSADMIN = "SYSADMIN"
VALID_ROLES = {ROLE_USER, ROLE_ADMIN, ROLE_OWNER, ROLE_SYSADMIN}

SYSADMIN_ID = "sysadmin"
SYSADMIN_NAME = "System Administrator"


def normalize_role(value: Optional[str]) -> str:
    r = (value or "").strip().upper()
    return r if r in VALID_ROLES else ROLE_USER


@dataclass(frozen=True)
class Principal:
    """
    Who a session token speaks for. Built once at login and then only ever
    read back out of the token; the server keeps no session state.
    """

    kind: str
    id: str
    name: str
    role: str
    family_id: Optional[str] = None
    family_slug: Optional[str] = None
    caretaker_type: Optional[str] = None
    account_id: Optional[str] = None
    account_email: Optional[str] = None

    @property
    def is_sysadmin(self) -> bool:
        return self.kind == KIND_SYSADMIN

    @property
    def is_account(self) -> bool:
        return self.kind == KIND_ACCOUNT

    @property
    def is_admin(self) -> bool:
        """OWNER, ADMIN and SYSADMIN are admin-capable."""
        return self.role in (ROLE_ADMIN, ROLE_OWNER, ROLE_SYSADMIN)

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.caretaker_type or self.kind,
            "role": self.role,
            "familyId": self.family_id,
            "familySlug": self.family_slug,
            "isSysAdmin": self.is_sysadmin,
        }


def sysadmin_principal() -> Principal:
    return Principal(
        kind=KIND_SYSADMIN,
        id=SYSADMIN_ID,
        name=SYSADMIN_NAME,
        role=ROLE_SYSADMIN,
    )
