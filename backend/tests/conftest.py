"""
Shared pytest fixtures for the babylog backend tests.

Every test gets its own in-memory SQLite database, a frozen clock and a fresh
login limiter. The FastAPI app is wired to all three through dependency
overrides.
"""

import os

# Must be set before anything imports babylog.database / babylog.main
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SEED_DEFAULTS"] = "0"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["ENC_HASH"] = "test-enc-hash"
os.environ.pop("DEPLOYMENT_MODE", None)

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from babylog import encryption, models
from babylog.auth import get_clock, hash_password
from babylog.database import Base, get_db
from babylog.login_limiter import InMemoryAttemptStore, LockoutPolicy, LoginLimiter, get_login_limiter

FROZEN_NOW = datetime(2025, 6, 1, 12, 0, 0)
ADMIN_PASSWORD = "correct-horse-battery"
DEFAULT_PIN = "111222"


# ============================================================================
# CLOCKS
# ============================================================================

class FakeClock:
    """Monotonic seconds for the limiter; advance() moves it forward."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def now():
    return FROZEN_NOW


@pytest.fixture
def fake_clock():
    return FakeClock()


# ============================================================================
# ENVIRONMENT
# ============================================================================

@pytest.fixture
def saas_mode(monkeypatch):
    monkeypatch.setenv("DEPLOYMENT_MODE", "saas")


@pytest.fixture
def selfhosted_mode(monkeypatch):
    monkeypatch.delenv("DEPLOYMENT_MODE", raising=False)


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


class Factory:
    """Row builders. Everything is committed so the API sees it."""

    def __init__(self, db):
        self.db = db

    def family(self, slug="smith", name="Smith Family", pin=DEFAULT_PIN, auth_type=None, is_active=True):
        family = models.Family(slug=slug, name=name, is_active=is_active)
        self.db.add(family)
        self.db.flush()
        self.db.add(
            models.FamilySettings(
                family_id=family.id,
                family_name=name,
                security_pin=pin,
                auth_type=auth_type,
            )
        )
        self.db.commit()
        self.db.refresh(family)
        return family

    def caretaker(self, family, login_id, pin="123456", name=None, role="USER", inactive=False, deleted=False):
        caretaker = models.Caretaker(
            family_id=family.id if family else None,
            login_id=login_id,
            name=name or f"Caretaker {login_id}",
            type="Parent",
            role=role,
            security_pin=pin,
            inactive=inactive,
            deleted_at=FROZEN_NOW if deleted else None,
        )
        self.db.add(caretaker)
        self.db.commit()
        self.db.refresh(caretaker)
        return caretaker

    def account(self, family=None, email="parent@example.com", password="s3cret-pass", **billing):
        account = models.Account(
            email=email,
            hashed_password=hash_password(password),
            first_name="Pat",
            last_name="Smith",
            verified=True,
            family_id=family.id if family else None,
            **billing,
        )
        self.db.add(account)
        self.db.commit()
        self.db.refresh(account)
        return account

    def admin_password(self, password=ADMIN_PASSWORD):
        self.db.add(models.AppConfig(admin_pass=encryption.encrypt(password)))
        self.db.commit()


@pytest.fixture
def factory(db):
    return Factory(db)


# ============================================================================
# LIMITER
# ============================================================================

@pytest.fixture
def limiter(fake_clock):
    return LoginLimiter(
        policy=LockoutPolicy(max_attempts=5, window_seconds=900, lockout_seconds=900),
        store=InMemoryAttemptStore(),
        clock=fake_clock,
    )


# ============================================================================
# APP
# ============================================================================

@pytest.fixture
def app(db, limiter, now):
    from babylog.main import app as fastapi_app

    def _get_db():
        yield db

    fastapi_app.dependency_overrides[get_db] = _get_db
    fastapi_app.dependency_overrides[get_clock] = lambda: (lambda: now)
    fastapi_app.dependency_overrides[get_login_limiter] = lambda: limiter
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def days(n: int) -> timedelta:
    return timedelta(days=n)
