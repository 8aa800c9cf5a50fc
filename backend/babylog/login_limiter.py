# babylog/login_limiter.py
from __future__ import annotations

"""
Login attempt ledger: brute-force protection keyed by network origin.

After ``max_attempts`` failures inside ``window_seconds`` the origin is locked
for ``lockout_seconds``. A success clears the origin completely.

The counters live behind an ``AttemptStore`` so a single-process deployment can
use the in-memory store below while a multi-instance deployment plugs in a
shared key-value store. Whatever the backing, ``increment`` must apply the
read-modify-write atomically per origin.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, Protocol

from babylog.feature_flags import env_int

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WINDOW_MINUTES = 15
DEFAULT_LOCKOUT_MINUTES = 15


# -------------------------------------------------------------------
# Data
# -------------------------------------------------------------------
@dataclass(frozen=True)
class AttemptRecord:
    count: int = 0
    first_failure: float = 0.0
    locked_until: float = 0.0

    def is_locked(self, now: float) -> bool:
        return bool(self.locked_until) and now < self.locked_until


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    remaining_ms: int = 0


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    window_seconds: float = DEFAULT_WINDOW_MINUTES * 60
    lockout_seconds: float = DEFAULT_LOCKOUT_MINUTES * 60

    def next_record(self, current: Optional[AttemptRecord], now: float) -> AttemptRecord:
        """
        Apply one failure to *current*.

        A failure on an origin that is already locked counts, but never moves
        locked_until: hammering a locked origin neither shortens nor extends it.
        """
        if current is None or self._window_over(current, now):
            rec = AttemptRecord(count=1, first_failure=now)
        elif current.is_locked(now):
            return replace(current, count=current.count + 1)
        else:
            rec = replace(current, count=current.count + 1)

        if rec.count >= self.max_attempts:
            rec = replace(rec, locked_until=now + self.lockout_seconds)
        return rec

    def is_stale(self, rec: AttemptRecord, now: float) -> bool:
        return not rec.is_locked(now) and self._window_over(rec, now)

    def _window_over(self, rec: AttemptRecord, now: float) -> bool:
        if rec.locked_until:
            return now >= rec.locked_until
        return now - rec.first_failure > self.window_seconds


# -------------------------------------------------------------------
# Stores
# -------------------------------------------------------------------
class AttemptStore(Protocol):
    def get(self, origin: str) -> Optional[AttemptRecord]: ...

    def increment(self, origin: str, policy: LockoutPolicy, now: float) -> AttemptRecord: ...

    def reset(self, origin: str) -> None: ...

    def purge_expired(self, policy: LockoutPolicy, now: float) -> int: ...


class InMemoryAttemptStore:
    """Thread-safe dict store for single-instance deployments."""

    def __init__(self) -> None:
        self._records: dict[str, AttemptRecord] = {}
        self._lock = threading.Lock()

    def get(self, origin: str) -> Optional[AttemptRecord]:
        with self._lock:
            return self._records.get(origin)

    def increment(self, origin: str, policy: LockoutPolicy, now: float) -> AttemptRecord:
        with self._lock:
            rec = policy.next_record(self._records.get(origin), now)
            self._records[origin] = rec
            return rec

    def reset(self, origin: str) -> None:
        with self._lock:
            self._records.pop(origin, None)

    def purge_expired(self, policy: LockoutPolicy, now: float) -> int:
        with self._lock:
            stale = [k for k, rec in self._records.items() if policy.is_stale(rec, now)]
            for k in stale:
                del self._records[k]
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# -------------------------------------------------------------------
# Limiter
# -------------------------------------------------------------------
class LoginLimiter:
    """
    check_lockout() must run before any credential comparison;
    record_failure() on every rejected credential; reset_success() on success.
    None of these raise.
    """

    PURGE_INTERVAL_SECONDS = 60.0

    def __init__(
        self,
        policy: Optional[LockoutPolicy] = None,
        store: Optional[AttemptStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.policy = policy or LockoutPolicy()
        self.store = store if store is not None else InMemoryAttemptStore()
        self._clock = clock
        self._last_purge = 0.0

    @classmethod
    def from_env(cls) -> "LoginLimiter":
        policy = LockoutPolicy(
            max_attempts=max(1, env_int("LOGIN_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)),
            window_seconds=max(1, env_int("LOGIN_WINDOW_MINUTES", DEFAULT_WINDOW_MINUTES)) * 60,
            lockout_seconds=max(1, env_int("LOGIN_LOCKOUT_MINUTES", DEFAULT_LOCKOUT_MINUTES)) * 60,
        )
        return cls(policy=policy)

    def check_lockout(self, origin: str) -> LockoutStatus:
        now = self._clock()
        rec = self.store.get(origin)
        if rec is None or not rec.is_locked(now):
            return LockoutStatus(locked=False)
        remaining_ms = math.ceil((rec.locked_until - now) * 1000)
        return LockoutStatus(locked=True, remaining_ms=max(1, remaining_ms))

    def record_failure(self, origin: str) -> LockoutStatus:
        now = self._clock()
        was_locked = self.check_lockout(origin).locked
        rec = self.store.increment(origin, self.policy, now)
        self._maybe_purge(now)

        if rec.is_locked(now):
            if not was_locked:
                logger.warning(
                    "Login lockout: origin %s locked for %d min after %d failures",
                    origin,
                    int(self.policy.lockout_seconds // 60),
                    rec.count,
                )
            return LockoutStatus(locked=True, remaining_ms=math.ceil((rec.locked_until - now) * 1000))
        return LockoutStatus(locked=False)

    def reset_success(self, origin: str) -> None:
        self.store.reset(origin)

    def _maybe_purge(self, now: float) -> None:
        if now - self._last_purge < self.PURGE_INTERVAL_SECONDS:
            return
        self._last_purge = now
        purged = self.store.purge_expired(self.policy, now)
        if purged:
            logger.debug("Login limiter purged %d stale origins", purged)


# Module-level singleton (single-instance deployments)
_login_limiter = LoginLimiter.from_env()


def get_login_limiter() -> LoginLimiter:
    return _login_limiter
