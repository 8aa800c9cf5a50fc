# babylog/authenticator.py
from __future__ import annotations

"""
Credential -> Principal.

Order of checks for every login:
  1) origin lockout (before any credential is looked at)
  2) family scope: slug -> family, billing gate in saas mode
  3) the credential itself

Any rejection records a failed attempt for the origin; a success clears it.
Only LockedOut and FamilyExpired say anything more specific than
"Invalid credentials".
"""

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from babylog import models, store
from babylog.auth import verify_password
from babylog.auth_errors import (
    FamilyExpired,
    FamilyNotFound,
    InvalidCredentials,
    InvalidLoginRequest,
    LockedOut,
    SystemNotConfigured,
)
from babylog.encryption import DecryptionError, decrypt
from babylog.entitlements import Clock, EntitlementSnapshot, is_entitlement_expired, utcnow
from babylog.feature_flags import is_saas_mode
from babylog.login_limiter import LoginLimiter
from babylog.principal import (
    KIND_ACCOUNT,
    KIND_CARETAKER,
    KIND_SYSTEM_CARETAKER,
    ROLE_OWNER,
    Principal,
    normalize_role,
    sysadmin_principal,
)
from babylog.schemas import (
    AccountLogin,
    AdminPasswordLogin,
    CaretakerPinLogin,
    LoginPayloadError,
    SystemPinLogin,
    parse_login_payload,
)

logger = logging.getLogger(__name__)

# Rejections that count against the origin. SystemNotConfigured is the
# operator's problem, not the caller's, so it is not counted.
_COUNTED_FAILURES = (InvalidCredentials, InvalidLoginRequest, FamilyNotFound, FamilyExpired)

# Values that may appear in log lines for a raw request body
_LOGGED_KINDS = frozenset({"admin", "system_pin", "caretaker", "account"})


@dataclass(frozen=True)
class AuthResult:
    principal: Principal
    entitlement: Optional[EntitlementSnapshot] = None
    auth_type: Optional[str] = None


@dataclass(frozen=True)
class FamilyScope:
    family: Optional[models.Family]
    settings: models.FamilySettings
    snapshot: Optional[EntitlementSnapshot]

    @property
    def family_id(self) -> Optional[str]:
        return self.family.id if self.family else None

    @property
    def family_slug(self) -> Optional[str]:
        return self.family.slug if self.family else None


def _same_secret(given: str, expected: Optional[str]) -> bool:
    if not expected:
        return False
    return secrets.compare_digest(given.encode("utf-8"), expected.encode("utf-8"))


def detect_auth_type(settings: models.FamilySettings, regular_caretakers: int) -> str:
    """
    Explicit setting wins. Otherwise more than one regular caretaker means
    everyone logs in individually.
    """
    if settings.auth_type:
        return settings.auth_type
    if regular_caretakers > 1:
        return models.AUTH_TYPE_CARETAKER
    return models.AUTH_TYPE_SYSTEM


def account_principal(account: models.Account) -> Principal:
    """Account holders own their family."""
    family = account.family
    name = " ".join(p for p in (account.first_name, account.last_name) if p) or account.email
    return Principal(
        kind=KIND_ACCOUNT,
        id=account.id,
        name=name,
        role=ROLE_OWNER,
        family_id=family.id if family else None,
        family_slug=family.slug if family else None,
        account_id=account.id,
        account_email=account.email,
    )


class CredentialAuthenticator:
    def __init__(self, db: Session, limiter: LoginLimiter, now: Clock = utcnow) -> None:
        self.db = db
        self.limiter = limiter
        self.now = now

    # -----------------------------
    # Entry point
    # -----------------------------
    def authenticate(self, credentials, origin: str) -> AuthResult:
        return self._attempt(origin, getattr(credentials, "kind", "?"), lambda: self._dispatch(credentials))

    def authenticate_payload(self, body: Any, origin: str) -> AuthResult:
        """
        Raw /api/auth body. Parsed after the lockout check, so a malformed
        body counts as a failed attempt like any other rejection.
        """

        def run() -> AuthResult:
            try:
                credentials = parse_login_payload(body)
            except LoginPayloadError as e:
                raise InvalidLoginRequest(str(e)) from e
            return self._dispatch(credentials)

        kind = "legacy"
        if isinstance(body, dict) and "kind" in body:
            raw_kind = body["kind"]
            kind = raw_kind if isinstance(raw_kind, str) and raw_kind in _LOGGED_KINDS else "unknown"
        return self._attempt(origin, kind, run)

    def _attempt(self, origin: str, kind: str, run: Callable[[], AuthResult]) -> AuthResult:
        lock = self.limiter.check_lockout(origin)
        if lock.locked:
            logger.warning("Login attempt from locked origin %s (%sms left)", origin, lock.remaining_ms)
            raise LockedOut(lock.remaining_ms)

        try:
            result = run()
        except _COUNTED_FAILURES as e:
            self.limiter.record_failure(origin)
            logger.warning("Failed %s login from %s: %s", kind, origin, e.code)
            raise

        self.limiter.reset_success(origin)
        logger.info(
            "Login ok: %s %s (family=%s) from %s",
            result.principal.kind,
            result.principal.id,
            result.principal.family_slug,
            origin,
        )
        return result

    def _dispatch(self, credentials) -> AuthResult:
        if isinstance(credentials, AdminPasswordLogin):
            return self._admin_password(credentials)
        if isinstance(credentials, SystemPinLogin):
            return self._system_pin(credentials)
        if isinstance(credentials, CaretakerPinLogin):
            return self._caretaker_pin(credentials)
        if isinstance(credentials, AccountLogin):
            return self._account(credentials)
        raise InvalidLoginRequest()

    # -----------------------------
    # Family scope + billing gate
    # -----------------------------
    def _family_scope(self, slug: Optional[str]) -> FamilyScope:
        family: Optional[models.Family] = None
        if slug:
            family = store.get_active_family_by_slug(self.db, slug)
            if family is None:
                raise FamilyNotFound()
        elif is_saas_mode():
            # Every hosted login is family-scoped
            raise FamilyNotFound()

        snapshot = self._gate_family(family)

        settings = store.get_settings(self.db, family.id if family else None)
        if settings is None:
            logger.error("No family settings row found (family=%s)", slug or "(default)")
            raise SystemNotConfigured()

        if family is None and settings.family is not None:
            family = settings.family
            snapshot = self._snapshot_for(family)

        return FamilyScope(family=family, settings=settings, snapshot=snapshot)

    @staticmethod
    def _snapshot_for(family: Optional[models.Family]) -> Optional[EntitlementSnapshot]:
        if family is None or family.account is None:
            return None
        return EntitlementSnapshot.from_account(family.account)

    def _gate_family(self, family: Optional[models.Family]) -> Optional[EntitlementSnapshot]:
        """
        Runs before any credential comparison. Families without a billing
        account (legacy installs) are never gated.
        """
        snapshot = self._snapshot_for(family)
        if family is None or snapshot is None or not is_saas_mode():
            return snapshot

        if family.account.closed or is_entitlement_expired(snapshot, self.now()):
            raise FamilyExpired()
        return snapshot

    # -----------------------------
    # Auth mode
    # -----------------------------
    def _auth_mode(self, scope: FamilyScope) -> Tuple[str, int]:
        regular = store.count_regular_caretakers(self.db, scope.family_id)
        return detect_auth_type(scope.settings, regular), regular

    def migrate_auth_type(self, settings: models.FamilySettings, auth_type: str) -> None:
        """
        Persist an auto-detected mode after the first successful login.
        Losing a race to another login is fine; a storage error is logged and
        does not fail the login.
        """
        if settings.auth_type:
            return
        try:
            if store.set_auth_type_if_unset(self.db, settings.id, auth_type):
                logger.info("Auth type for settings %s set to %s", settings.id, auth_type)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not persist auth type for settings %s", settings.id)

    # -----------------------------
    # Credential arms
    # -----------------------------
    def _admin_password(self, creds: AdminPasswordLogin) -> AuthResult:
        config = store.get_app_config(self.db)
        if config is None or not config.admin_pass:
            logger.error("No admin password configured (app_config is empty)")
            raise SystemNotConfigured()

        try:
            expected = decrypt(config.admin_pass)
        except DecryptionError as e:
            logger.error("Stored admin password can't be decrypted: %s", e)
            raise SystemNotConfigured() from e

        if not _same_secret(creds.admin_password, expected):
            raise InvalidCredentials()

        return AuthResult(principal=sysadmin_principal())

    def _system_pin(self, creds: SystemPinLogin) -> AuthResult:
        scope = self._family_scope(creds.family_slug)
        auth_type, _ = self._auth_mode(scope)
        if auth_type != models.AUTH_TYPE_SYSTEM:
            raise InvalidCredentials()
        if not _same_secret(creds.security_pin, scope.settings.security_pin):
            raise InvalidCredentials()
        return self._system_caretaker_result(scope, auth_type)

    def _caretaker_pin(self, creds: CaretakerPinLogin) -> AuthResult:
        scope = self._family_scope(creds.family_slug)
        auth_type, regular = self._auth_mode(scope)

        if creds.login_id == models.SYSTEM_LOGIN_ID:
            # Reserved id: off for good once real caretakers exist
            if auth_type == models.AUTH_TYPE_CARETAKER or regular > 0:
                raise InvalidCredentials()
            if not _same_secret(creds.security_pin, scope.settings.security_pin):
                raise InvalidCredentials()
            return self._system_caretaker_result(scope, auth_type)

        caretaker = store.find_caretaker(self.db, scope.family_id, creds.login_id)
        if caretaker is None or not _same_secret(creds.security_pin, caretaker.security_pin):
            raise InvalidCredentials()

        principal = Principal(
            kind=KIND_CARETAKER,
            id=caretaker.id,
            name=caretaker.name,
            role=normalize_role(caretaker.role),
            family_id=scope.family_id,
            family_slug=scope.family_slug,
            caretaker_type=caretaker.type,
        )
        self.migrate_auth_type(scope.settings, auth_type)
        return AuthResult(principal=principal, entitlement=scope.snapshot, auth_type=auth_type)

    def _system_caretaker_result(self, scope: FamilyScope, auth_type: str) -> AuthResult:
        caretaker = store.get_or_create_system_caretaker(self.db, scope.family, scope.settings)
        if caretaker is None:
            logger.error("Settings %s have no family and no system caretaker", scope.settings.id)
            raise SystemNotConfigured()
        principal = Principal(
            kind=KIND_SYSTEM_CARETAKER,
            id=caretaker.id,
            name=caretaker.name,
            role=normalize_role(caretaker.role),
            family_id=scope.family_id,
            family_slug=scope.family_slug,
            caretaker_type=caretaker.type,
        )
        self.migrate_auth_type(scope.settings, auth_type)
        return AuthResult(principal=principal, entitlement=scope.snapshot, auth_type=auth_type)

    def _account(self, creds: AccountLogin) -> AuthResult:
        try:
            email = validate_email((creds.email or "").strip(), check_deliverability=False).normalized
        except EmailNotValidError as e:
            raise InvalidLoginRequest("Please enter a valid email address") from e
        if not creds.password:
            raise InvalidLoginRequest("Email and password are required")

        account = store.get_account_by_email(self.db, email)
        if account is None or not verify_password(creds.password, account.hashed_password):
            raise InvalidCredentials()

        # Only after the password matched, so closure doesn't reveal the email exists
        if account.closed:
            raise InvalidCredentials("This account has been closed")

        return AuthResult(principal=account_principal(account), entitlement=EntitlementSnapshot.from_account(account))
