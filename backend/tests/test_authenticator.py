"""
Tests for the credential authenticator: the three login arms, the auth-mode
state machine, family gating and the lockout interplay.
"""

import logging
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from babylog import models, store
from babylog.auth_errors import (
    FamilyExpired,
    FamilyNotFound,
    InvalidCredentials,
    InvalidLoginRequest,
    LockedOut,
    SystemNotConfigured,
)
from babylog.authenticator import CredentialAuthenticator, detect_auth_type
from babylog.principal import KIND_ACCOUNT, KIND_CARETAKER, KIND_SYSADMIN, KIND_SYSTEM_CARETAKER
from babylog.schemas import AccountLogin, AdminPasswordLogin, CaretakerPinLogin, SystemPinLogin

from conftest import ADMIN_PASSWORD, DEFAULT_PIN, FROZEN_NOW

ORIGIN = "203.0.113.7"


@pytest.fixture
def authenticator(db, limiter, now):
    return CredentialAuthenticator(db, limiter, now=lambda: now)


def settings_for(db, family):
    return db.scalar(select(models.FamilySettings).where(models.FamilySettings.family_id == family.id))


def system_caretakers(db, family):
    return db.scalars(
        select(models.Caretaker).where(
            models.Caretaker.family_id == family.id,
            models.Caretaker.login_id == models.SYSTEM_LOGIN_ID,
        )
    ).all()


# ============================================================================
# TEST SUITE: ADMIN PASSWORD
# ============================================================================

class TestAdminPassword:

    def test_correct_password_mints_sysadmin(self, authenticator, factory):
        factory.family()
        factory.admin_password()

        result = authenticator.authenticate(AdminPasswordLogin(admin_password=ADMIN_PASSWORD), ORIGIN)

        assert result.principal.kind == KIND_SYSADMIN
        assert result.principal.family_id is None
        assert result.entitlement is None

    def test_zero_caretakers_still_allows_admin(self, authenticator, factory, db):
        # Scenario B
        family = factory.family()
        factory.admin_password()
        assert not db.scalars(select(models.Caretaker).where(models.Caretaker.family_id == family.id)).all()

        result = authenticator.authenticate(AdminPasswordLogin(admin_password=ADMIN_PASSWORD), ORIGIN)

        assert result.principal.is_sysadmin
        assert result.principal.to_public()["familyId"] is None

    def test_wrong_password(self, authenticator, factory, limiter):
        factory.admin_password()
        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(AdminPasswordLogin(admin_password="nope"), ORIGIN)
        assert limiter.store.get(ORIGIN).count == 1

    def test_plaintext_legacy_value_is_accepted(self, authenticator, db):
        db.add(models.AppConfig(admin_pass="legacy-plain"))
        db.commit()
        result = authenticator.authenticate(AdminPasswordLogin(admin_password="legacy-plain"), ORIGIN)
        assert result.principal.is_sysadmin

    def test_missing_app_config(self, authenticator, limiter):
        with pytest.raises(SystemNotConfigured):
            authenticator.authenticate(AdminPasswordLogin(admin_password="x"), ORIGIN)
        # Operator problem, not the caller's
        assert limiter.store.get(ORIGIN) is None

    def test_undecryptable_value(self, authenticator, db):
        db.add(models.AppConfig(admin_pass="enc:v1:AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"))
        db.commit()
        with pytest.raises(SystemNotConfigured):
            authenticator.authenticate(AdminPasswordLogin(admin_password="x"), ORIGIN)


# ============================================================================
# TEST SUITE: SYSTEM PIN
# ============================================================================

class TestSystemPin:

    def test_first_login_creates_system_caretaker(self, authenticator, factory, db):
        family = factory.family()
        assert system_caretakers(db, family) == []

        result = authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)

        rows = system_caretakers(db, family)
        assert len(rows) == 1
        assert result.principal.kind == KIND_SYSTEM_CARETAKER
        assert result.principal.id == rows[0].id
        assert result.principal.family_slug == "smith"

    def test_second_login_reuses_system_caretaker(self, authenticator, factory, db):
        family = factory.family()
        creds = SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith")

        first = authenticator.authenticate(creds, ORIGIN)
        second = authenticator.authenticate(creds, ORIGIN)

        assert first.principal.id == second.principal.id
        assert len(system_caretakers(db, family)) == 1

    def test_race_on_create_returns_winner(self, authenticator, factory, db):
        family = factory.family()
        winner = factory.caretaker(family, models.SYSTEM_LOGIN_ID, pin=DEFAULT_PIN, role="ADMIN")

        # First lookup misses (the other request hasn't committed yet), the
        # insert then trips the unique index and we re-read.
        real_find = store.find_system_caretaker
        calls = {"n": 0}

        def find(db_, family_id):
            calls["n"] += 1
            return None if calls["n"] == 1 else real_find(db_, family_id)

        with patch.object(store, "find_system_caretaker", side_effect=find):
            result = authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)

        assert result.principal.id == winner.id
        assert len(system_caretakers(db, family)) == 1

    def test_wrong_pin(self, authenticator, factory, limiter):
        factory.family()
        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(SystemPinLogin(security_pin="000000", family_slug="smith"), ORIGIN)
        assert limiter.store.get(ORIGIN).count == 1

    def test_refused_in_caretaker_mode(self, authenticator, factory):
        family = factory.family()
        factory.caretaker(family, "01")
        factory.caretaker(family, "02")
        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)

    def test_unknown_family_counts_as_failure(self, authenticator, factory, limiter):
        factory.family()
        with pytest.raises(FamilyNotFound):
            authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="jones"), ORIGIN)
        assert limiter.store.get(ORIGIN).count == 1

    def test_inactive_family_is_not_found(self, authenticator, factory):
        factory.family(is_active=False)
        with pytest.raises(FamilyNotFound):
            authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)

    def test_self_hosted_without_slug_uses_default_family(self, authenticator, factory, selfhosted_mode):
        factory.family(slug="my-family")
        result = authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN), ORIGIN)
        assert result.principal.family_slug == "my-family"

    def test_saas_requires_slug(self, authenticator, factory, saas_mode):
        factory.family()
        with pytest.raises(FamilyNotFound):
            authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN), ORIGIN)


# ============================================================================
# TEST SUITE: CARETAKER PIN + RESERVED LOGIN ID
# ============================================================================

class TestCaretakerPin:

    def test_caretaker_login(self, authenticator, factory):
        family = factory.family()
        mum = factory.caretaker(family, "01", pin="424242", name="Mum", role="ADMIN")
        factory.caretaker(family, "02")

        result = authenticator.authenticate(
            CaretakerPinLogin(login_id="01", security_pin="424242", family_slug="smith"), ORIGIN
        )

        assert result.principal.kind == KIND_CARETAKER
        assert result.principal.id == mum.id
        assert result.principal.role == "ADMIN"
        assert result.principal.caretaker_type == "Parent"

    def test_wrong_pin(self, authenticator, factory):
        family = factory.family()
        factory.caretaker(family, "01", pin="424242")
        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(CaretakerPinLogin(login_id="01", security_pin="000000", family_slug="smith"), ORIGIN)

    def test_unknown_login_id(self, authenticator, factory, limiter):
        factory.family()
        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(CaretakerPinLogin(login_id="09", security_pin="424242", family_slug="smith"), ORIGIN)
        assert limiter.store.get(ORIGIN).count == 1

    @pytest.mark.parametrize("flags", [{"inactive": True}, {"deleted": True}])
    def test_inactive_or_deleted_caretaker(self, authenticator, factory, flags):
        family = factory.family()
        factory.caretaker(family, "01", pin="424242", **flags)
        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(CaretakerPinLogin(login_id="01", security_pin="424242", family_slug="smith"), ORIGIN)

    def test_caretaker_of_other_family_is_invisible(self, authenticator, factory):
        factory.family()
        other = factory.family(slug="jones", name="Jones")
        factory.caretaker(other, "01", pin="424242")
        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(CaretakerPinLogin(login_id="01", security_pin="424242", family_slug="smith"), ORIGIN)

    def test_reserved_id_disabled_once_caretakers_exist(self, authenticator, factory):
        # Scenario A: two caretakers, auth_type unset, correct system PIN
        family = factory.family()
        factory.caretaker(family, "01")
        factory.caretaker(family, "02")

        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(
                CaretakerPinLogin(login_id="00", security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN
            )

    def test_reserved_id_disabled_with_single_caretaker(self, authenticator, factory):
        family = factory.family()
        factory.caretaker(family, "01")
        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(
                CaretakerPinLogin(login_id="00", security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN
            )

    def test_reserved_id_disabled_in_explicit_caretaker_mode(self, authenticator, factory):
        factory.family(auth_type=models.AUTH_TYPE_CARETAKER)
        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(
                CaretakerPinLogin(login_id="00", security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN
            )

    def test_reserved_id_works_on_empty_family(self, authenticator, factory):
        factory.family()
        result = authenticator.authenticate(
            CaretakerPinLogin(login_id="00", security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN
        )
        assert result.principal.kind == KIND_SYSTEM_CARETAKER


# ============================================================================
# TEST SUITE: AUTH MODE DETECTION + MIGRATION
# ============================================================================

class TestAuthMode:

    @pytest.mark.parametrize(
        "configured,regular,expected",
        [
            (None, 0, "SYSTEM"),
            (None, 1, "SYSTEM"),
            (None, 2, "CARETAKER"),
            ("SYSTEM", 5, "SYSTEM"),
            ("CARETAKER", 0, "CARETAKER"),
        ],
    )
    def test_detect(self, configured, regular, expected):
        settings = models.FamilySettings(auth_type=configured)
        assert detect_auth_type(settings, regular) == expected

    def test_system_caretaker_is_not_counted(self, authenticator, factory, db):
        family = factory.family()
        factory.caretaker(family, models.SYSTEM_LOGIN_ID, pin=DEFAULT_PIN)
        factory.caretaker(family, "01")

        result = authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)
        assert result.auth_type == "SYSTEM"

    def test_detected_mode_is_persisted(self, authenticator, factory, db):
        family = factory.family()
        factory.caretaker(family, "01", pin="424242")
        factory.caretaker(family, "02")
        assert settings_for(db, family).auth_type is None

        authenticator.authenticate(CaretakerPinLogin(login_id="01", security_pin="424242", family_slug="smith"), ORIGIN)

        db.expire_all()
        assert settings_for(db, family).auth_type == models.AUTH_TYPE_CARETAKER

    def test_failed_login_does_not_persist_mode(self, authenticator, factory, db):
        family = factory.family()
        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(SystemPinLogin(security_pin="000000", family_slug="smith"), ORIGIN)
        db.expire_all()
        assert settings_for(db, family).auth_type is None

    def test_explicit_mode_is_never_overwritten(self, authenticator, factory, db):
        family = factory.family(auth_type=models.AUTH_TYPE_SYSTEM)
        factory.caretaker(family, "01", pin="424242")
        factory.caretaker(family, "02")

        authenticator.authenticate(CaretakerPinLogin(login_id="01", security_pin="424242", family_slug="smith"), ORIGIN)

        db.expire_all()
        assert settings_for(db, family).auth_type == models.AUTH_TYPE_SYSTEM

    def test_storage_error_during_migration_does_not_fail_login(self, authenticator, factory):
        factory.family()
        with patch(
            "babylog.store.set_auth_type_if_unset",
            side_effect=OperationalError("UPDATE", {}, Exception("disk I/O error")),
        ):
            result = authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)
        assert result.principal.kind == KIND_SYSTEM_CARETAKER


# ============================================================================
# TEST SUITE: FAMILY GATING (SAAS)
# ============================================================================

class TestFamilyGating:

    def test_expired_family_rejected_before_pin_check(self, authenticator, factory, limiter, saas_mode):
        family = factory.family()
        factory.account(family, trial_ends=FROZEN_NOW - timedelta(days=1))

        # Wrong PIN and right PIN fail the same way
        for pin in ("000000", DEFAULT_PIN):
            with pytest.raises(FamilyExpired) as exc:
                authenticator.authenticate(SystemPinLogin(security_pin=pin, family_slug="smith"), ORIGIN)
            assert exc.value.message == "Family access has expired. Please renew your subscription."

        assert limiter.store.get(ORIGIN).count == 2

    def test_closed_account_blocks_family(self, authenticator, factory, saas_mode):
        family = factory.family()
        factory.account(family, closed=True, plan_type="full")
        with pytest.raises(FamilyExpired):
            authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)

    def test_live_trial_passes_and_snapshot_is_attached(self, authenticator, factory, saas_mode):
        family = factory.family()
        trial_ends = FROZEN_NOW + timedelta(days=3)
        factory.account(family, trial_ends=trial_ends)

        result = authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)

        assert result.entitlement.trial_ends == trial_ends

    def test_lifetime_passes_even_with_old_expiry(self, authenticator, factory, saas_mode):
        family = factory.family()
        factory.account(family, plan_type="full", plan_expires=FROZEN_NOW - timedelta(days=400))
        result = authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)
        assert result.principal.family_slug == "smith"

    def test_family_without_account_is_not_gated(self, authenticator, factory, saas_mode):
        factory.family()
        result = authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)
        assert result.entitlement is None

    def test_self_hosted_ignores_expiry(self, authenticator, factory, selfhosted_mode):
        family = factory.family()
        factory.account(family, trial_ends=FROZEN_NOW - timedelta(days=30))
        result = authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)
        assert result.principal.kind == KIND_SYSTEM_CARETAKER


# ============================================================================
# TEST SUITE: ACCOUNT LOGIN
# ============================================================================

class TestAccountLogin:

    def test_account_login(self, authenticator, factory):
        family = factory.family()
        account = factory.account(family, plan_type="sub", plan_expires=FROZEN_NOW + timedelta(days=20))

        result = authenticator.authenticate(AccountLogin(email="Parent@Example.com", password="s3cret-pass"), ORIGIN)

        assert result.principal.kind == KIND_ACCOUNT
        assert result.principal.role == "OWNER"
        assert result.principal.account_id == account.id
        assert result.principal.family_slug == "smith"
        assert result.entitlement.plan_type == "sub"

    def test_account_without_family(self, authenticator, factory):
        factory.account()
        result = authenticator.authenticate(AccountLogin(email="parent@example.com", password="s3cret-pass"), ORIGIN)
        assert result.principal.family_id is None

    def test_wrong_password(self, authenticator, factory, limiter):
        factory.account()
        with pytest.raises(InvalidCredentials) as exc:
            authenticator.authenticate(AccountLogin(email="parent@example.com", password="wrong"), ORIGIN)
        assert exc.value.message == "Invalid credentials"
        assert limiter.store.get(ORIGIN).count == 1

    def test_unknown_email(self, authenticator):
        with pytest.raises(InvalidCredentials):
            authenticator.authenticate(AccountLogin(email="nobody@example.com", password="x"), ORIGIN)

    def test_closed_account(self, authenticator, factory, limiter):
        factory.account(closed=True)
        with pytest.raises(InvalidCredentials) as exc:
            authenticator.authenticate(AccountLogin(email="parent@example.com", password="s3cret-pass"), ORIGIN)
        assert exc.value.message == "This account has been closed"
        assert limiter.store.get(ORIGIN).count == 1

    def test_closed_account_with_wrong_password_stays_generic(self, authenticator, factory):
        factory.account(closed=True)
        with pytest.raises(InvalidCredentials) as exc:
            authenticator.authenticate(AccountLogin(email="parent@example.com", password="wrong"), ORIGIN)
        assert exc.value.message == "Invalid credentials"

    @pytest.mark.parametrize("email", ["", "not-an-email", "a@"])
    def test_malformed_email(self, authenticator, limiter, email):
        with pytest.raises(InvalidLoginRequest):
            authenticator.authenticate(AccountLogin(email=email, password="x"), ORIGIN)
        assert limiter.store.get(ORIGIN).count == 1


# ============================================================================
# TEST SUITE: LOCKOUT INTERPLAY
# ============================================================================

class TestLockout:

    def test_correct_pin_after_lockout_is_still_refused(self, authenticator, factory):
        # Scenario E
        factory.family()
        for _ in range(6):
            with pytest.raises((InvalidCredentials, LockedOut)):
                authenticator.authenticate(SystemPinLogin(security_pin="000000", family_slug="smith"), ORIGIN)

        with pytest.raises(LockedOut) as exc:
            authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)

        assert exc.value.status_code == 429
        assert exc.value.retry_after_seconds > 0

    def test_lockout_checked_before_storage(self, authenticator, limiter):
        for _ in range(5):
            limiter.record_failure(ORIGIN)
        with patch("babylog.store.get_app_config") as get_config:
            with pytest.raises(LockedOut):
                authenticator.authenticate(AdminPasswordLogin(admin_password=ADMIN_PASSWORD), ORIGIN)
        get_config.assert_not_called()

    def test_success_resets_failures(self, authenticator, factory, limiter):
        factory.family()
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                authenticator.authenticate(SystemPinLogin(security_pin="000000", family_slug="smith"), ORIGIN)

        authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)

        assert limiter.store.get(ORIGIN) is None

    def test_lockout_expires_with_clock(self, authenticator, factory, fake_clock):
        factory.family()
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                authenticator.authenticate(SystemPinLogin(security_pin="000000", family_slug="smith"), ORIGIN)

        fake_clock.advance(15 * 60)

        result = authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN, family_slug="smith"), ORIGIN)
        assert result.principal.kind == KIND_SYSTEM_CARETAKER


# ============================================================================
# TEST SUITE: SETTINGS WITHOUT A FAMILY
# ============================================================================

class TestFamilylessSettings:

    @pytest.fixture
    def settings(self, db):
        row = models.FamilySettings(family_id=None, family_name="Home", security_pin=DEFAULT_PIN)
        db.add(row)
        db.commit()
        return row

    def test_system_caretaker_never_created_lazily(self, authenticator, db, settings, limiter, selfhosted_mode):
        with pytest.raises(SystemNotConfigured):
            authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN), ORIGIN)

        assert db.scalar(select(func.count()).select_from(models.Caretaker)) == 0
        assert limiter.store.get(ORIGIN) is None

    def test_existing_system_caretaker_is_reused(self, authenticator, factory, settings, selfhosted_mode):
        existing = factory.caretaker(None, models.SYSTEM_LOGIN_ID, pin=DEFAULT_PIN, role="ADMIN")

        result = authenticator.authenticate(SystemPinLogin(security_pin=DEFAULT_PIN), ORIGIN)

        assert result.principal.id == existing.id
        assert result.principal.family_id is None

    def test_store_returns_none_without_family(self, db, settings):
        assert store.get_or_create_system_caretaker(db, None, settings) is None


# ============================================================================
# TEST SUITE: LOGGING OF RAW BODIES
# ============================================================================

class TestRawPayloadLogging:

    @pytest.mark.parametrize("kind", ["admin\nLogin ok: SYSADMIN forged", "root forged"])
    def test_unknown_kind_is_not_echoed(self, authenticator, caplog, kind):
        with caplog.at_level(logging.WARNING, logger="babylog.authenticator"):
            with pytest.raises(InvalidLoginRequest):
                authenticator.authenticate_payload({"kind": kind, "admin_password": "x"}, ORIGIN)

        assert "forged" not in caplog.text
        assert "Failed unknown login" in caplog.text

    def test_known_kind_is_logged(self, authenticator, factory, caplog):
        factory.family()
        body = {"kind": "system_pin", "security_pin": "000000", "family_slug": "smith"}
        with caplog.at_level(logging.WARNING, logger="babylog.authenticator"):
            with pytest.raises(InvalidCredentials):
                authenticator.authenticate_payload(body, ORIGIN)

        assert "Failed system_pin login" in caplog.text

    def test_legacy_body(self, authenticator, factory, caplog):
        factory.family()
        with caplog.at_level(logging.WARNING, logger="babylog.authenticator"):
            with pytest.raises(InvalidCredentials):
                authenticator.authenticate_payload({"securityPin": "000000", "familySlug": "smith"}, ORIGIN)

        assert "Failed legacy login" in caplog.text
