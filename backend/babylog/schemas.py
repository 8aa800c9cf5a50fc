# babylog/schemas.py
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

# -----------------------------
# AUTH: credential union
# -----------------------------
# Exactly one arm per login request. Clients that predate the `kind` field
# send loose {adminPassword | loginId + securityPin | securityPin} bodies;
# parse_login_payload maps those onto the same arms.


class AdminPasswordLogin(BaseModel):
    kind: Literal["admin"] = "admin"
    admin_password: str = Field(min_length=1)


class SystemPinLogin(BaseModel):
    kind: Literal["system_pin"] = "system_pin"
    security_pin: str = Field(min_length=1)
    family_slug: Optional[str] = None


class CaretakerPinLogin(BaseModel):
    kind: Literal["caretaker"] = "caretaker"
    login_id: str = Field(min_length=2, max_length=2)
    security_pin: str = Field(min_length=1)
    family_slug: Optional[str] = None


class AccountLogin(BaseModel):
    kind: Literal["account"] = "account"
    email: str
    password: str


LoginCredentials = Annotated[
    Union[AdminPasswordLogin, SystemPinLogin, CaretakerPinLogin, AccountLogin],
    Field(discriminator="kind"),
]

_credentials_adapter = TypeAdapter(LoginCredentials)


class LoginPayloadError(ValueError):
    pass


def parse_login_payload(body: Any) -> Union[AdminPasswordLogin, SystemPinLogin, CaretakerPinLogin]:
    """
    Caretaker/system/admin login body -> one credential arm.

    Tagged bodies ({"kind": ...}) are validated as-is. Loose bodies are
    dispatched in a fixed order: adminPassword, then loginId + securityPin,
    then securityPin alone.
    """
    if not isinstance(body, dict):
        raise LoginPayloadError("Security PIN or admin password is required")

    try:
        if "kind" in body:
            creds = _credentials_adapter.validate_python(body)
            if isinstance(creds, AccountLogin):
                raise LoginPayloadError("Use /api/accounts/login for account credentials")
            return creds

        slug = (body.get("familySlug") or "").strip() or None
        if body.get("adminPassword"):
            return AdminPasswordLogin(admin_password=str(body["adminPassword"]))
        if body.get("securityPin") and body.get("loginId"):
            return CaretakerPinLogin(
                login_id=str(body["loginId"]),
                security_pin=str(body["securityPin"]),
                family_slug=slug,
            )
        if body.get("securityPin"):
            return SystemPinLogin(security_pin=str(body["securityPin"]), family_slug=slug)
    except ValidationError as e:
        raise LoginPayloadError("Invalid login request") from e

    raise LoginPayloadError("Security PIN or admin password is required")


class AccountLoginIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


# -----------------------------
# AUTH: responses
# -----------------------------
class PrincipalOut(BaseModel):
    id: str
    name: str
    type: Optional[str] = None
    role: str
    token: str
    familyId: Optional[str] = None
    familySlug: Optional[str] = None
    isSysAdmin: bool = False


class AuthOut(BaseModel):
    success: bool = True
    data: PrincipalOut


class CaretakerExistsOut(BaseModel):
    hasCaretakers: bool
    authType: str
    familySlug: Optional[str] = None


class TokenOut(BaseModel):
    success: bool = True
    token: str


class AccountUserOut(BaseModel):
    id: str
    email: str
    firstName: str = ""
    lastName: Optional[str] = None
    verified: bool = False
    hasFamily: bool = False
    familyId: Optional[str] = None
    familySlug: Optional[str] = None


class AccountLoginOut(BaseModel):
    success: bool = True
    message: str = "Login successful"
    token: str
    user: AccountUserOut


class AccountStatusOut(BaseModel):
    accountId: str
    email: str
    firstName: str = ""
    lastName: Optional[str] = None
    verified: bool
    hasFamily: bool
    familySlug: Optional[str] = None
    familyName: Optional[str] = None
    betaParticipant: bool
    closed: bool
    closedAt: Optional[datetime] = None
    planType: Optional[str] = None
    planExpires: Optional[datetime] = None
    trialEnds: Optional[datetime] = None
    subscriptionActive: bool
    subscriptionId: Optional[str] = None
    accountStatus: Literal["active", "trial", "expired", "closed", "no_family"]


# -----------------------------
# NOTES (sample family records)
# -----------------------------
class NoteCreateIn(BaseModel):
    content: str = Field(min_length=1)
    category: Optional[str] = None


class NoteOut(BaseModel):
    id: str
    family_id: str
    author_id: str
    content: str
    category: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


# -----------------------------
# BILLING
# -----------------------------
class CheckoutIn(BaseModel):
    planType: Literal["sub", "full"]


class VerifySessionIn(BaseModel):
    sessionId: str = Field(min_length=1)
