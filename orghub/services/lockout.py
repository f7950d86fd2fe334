"""
Progressive account lockout.

Pure state transitions over a credential's lock fields; callers persist.

    attempts:  0..max_attempts-1, reset whenever a lock level is reached
    lock_level: 0 none, 1..3 timed locks, 4 permanent
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from ..config import settings
from ..errors import AccountLocked, TemporarilyLocked


PERMANENT_LOCK_MESSAGE = "Account permanently locked. Please contact Administrator or Enterprise Admin."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they are stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LockState(Protocol):
    failed_login_attempts: int
    lock_level: int
    lock_until: Optional[datetime]
    is_permanently_locked: bool


@dataclass(frozen=True)
class LockPolicy:
    max_attempts: int = 3
    durations: Dict[int, timedelta] = field(default_factory=lambda: {
        1: timedelta(minutes=1),
        2: timedelta(minutes=3),
        3: timedelta(minutes=5),
    })

    @property
    def permanent_level(self) -> int:
        return len(self.durations) + 1

    @classmethod
    def from_settings(cls) -> "LockPolicy":
        durations = {
            level: timedelta(minutes=minutes)
            for level, minutes in enumerate(settings.lock_durations_minutes, start=1)
        }
        return cls(max_attempts=settings.max_failed_attempts, durations=durations)


@dataclass(frozen=True)
class FailureOutcome:
    locked: bool
    lock_level: int
    attempts_remaining: int
    lock_seconds: Optional[int]
    permanent: bool
    message: str


def _minutes_label(minutes: int) -> str:
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


def check_lock(state: LockState, now: Optional[datetime] = None) -> None:
    """Raise if the credential may not attempt a login right now."""
    now = now or utcnow()
    if state.is_permanently_locked:
        raise AccountLocked(PERMANENT_LOCK_MESSAGE, lock_level=state.lock_level)
    lock_until = as_utc(state.lock_until)
    if lock_until and lock_until > now:
        remaining_sec = math.ceil((lock_until - now).total_seconds())
        remaining_min = math.ceil(remaining_sec / 60)
        raise TemporarilyLocked(
            f"Account temporarily locked. Try again in {remaining_min} minute(s).",
            remaining_seconds=remaining_sec,
            lock_level=state.lock_level,
        )


def register_failure(state: LockState, now: Optional[datetime] = None, policy: Optional[LockPolicy] = None) -> FailureOutcome:
    now = now or utcnow()
    policy = policy or LockPolicy.from_settings()

    state.failed_login_attempts = (state.failed_login_attempts or 0) + 1
    if state.failed_login_attempts < policy.max_attempts:
        remaining = policy.max_attempts - state.failed_login_attempts
        return FailureOutcome(
            locked=False,
            lock_level=state.lock_level,
            attempts_remaining=remaining,
            lock_seconds=None,
            permanent=False,
            message=f"Invalid credentials. You have {remaining} attempt(s) left before lock.",
        )

    # Every max_attempts misses escalates one level
    state.failed_login_attempts = 0
    state.lock_level = min((state.lock_level or 0) + 1, policy.permanent_level)
    if state.lock_level >= policy.permanent_level:
        state.is_permanently_locked = True
        state.lock_until = None
        return FailureOutcome(
            locked=True,
            lock_level=state.lock_level,
            attempts_remaining=0,
            lock_seconds=None,
            permanent=True,
            message=PERMANENT_LOCK_MESSAGE,
        )

    duration = policy.durations[state.lock_level]
    state.lock_until = now + duration
    minutes = int(duration.total_seconds() // 60)
    return FailureOutcome(
        locked=True,
        lock_level=state.lock_level,
        attempts_remaining=0,
        lock_seconds=int(duration.total_seconds()),
        permanent=False,
        message=f"Account locked for {_minutes_label(minutes)} due to multiple failed attempts.",
    )


def register_success(state: LockState) -> None:
    state.failed_login_attempts = 0
    state.lock_level = 0
    state.lock_until = None
    state.is_permanently_locked = False
