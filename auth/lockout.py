"""
auth/lockout.py -- Account lockout after consecutive failed logins.

Policy (Settings):
  MAX_FAILED_LOGIN_ATTEMPTS consecutive failures (default 5) lock the account
  for ACCOUNT_LOCKOUT_MINUTES (default 30).

Rules:
  - The lock is checked before the password. While locked, even the correct
    password is refused and further failures neither count nor extend the lock.
  - Applying a lock resets the counter, so after the lock expires the user
    gets a fresh set of attempts.
  - A successful login resets the counter and clears an expired lock.

The counter is per account, not per client IP. Per-IP throttling is the rate
limiter's job (api/limiter.py).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from core.config import get_settings
from core.time_utils import parse_iso

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("hr_auth.auth")


@dataclass(frozen=True)
class LockoutResult:
    """Outcome of registering one failed attempt."""

    attempts: int
    locked: bool
    locked_until: datetime | None = None


def locked_until(user: User, now: datetime) -> datetime | None:
    """Return the lock expiry if the account is locked at `now`, else None."""
    until = parse_iso(user.account_locked_until)
    if until is not None and until > now:
        return until
    return None


def is_locked(user: User, now: datetime) -> bool:
    return locked_until(user, now) is not None


def seconds_until_unlock(user: User, now: datetime) -> int | None:
    """Whole seconds until the lock lifts (rounded up), or None when not locked."""
    until = locked_until(user, now)
    if until is None:
        return None
    return max(1, math.ceil((until - now).total_seconds()))


def register_failure(store: UserStore, user: User, now: datetime) -> LockoutResult:
    """Count one failed password for user and lock the account at the threshold."""
    settings = get_settings()
    attempts = store.increment_failed_logins(user.id)
    if attempts >= settings.max_failed_login_attempts:
        until = now + timedelta(minutes=settings.account_lockout_minutes)
        store.lock_account(user.id, until)
        logger.warning("Account locked after %d failed logins (user_id=%d)", attempts, user.id)
        return LockoutResult(attempts=attempts, locked=True, locked_until=until)
    return LockoutResult(attempts=attempts, locked=False)


def register_success(store: UserStore, user: User, ip_address: str | None, now: datetime) -> None:
    store.record_login(user.id, ip_address, now)
