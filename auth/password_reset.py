"""
auth/password_reset.py -- Single-use, time-limited password reset tokens.

Flow:
  1. request_reset(email) stores HMAC(token) + expiry (now + 1 hour) on the
     user row and returns the raw token for out-of-band delivery. A newer
     request overwrites the older token, so only the latest link works.
  2. consume_reset(token, new_password) swaps the password, clears the token
     in the same UPDATE (single use), clears any lockout and revokes every
     session of the account.

Unknown and inactive accounts produce no token. The HTTP layer answers
identically either way, so the endpoint cannot be used to probe for emails.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from auth.tokens import generate_opaque_token, hash_password, hash_token
from core.config import get_settings
from core.time_utils import utcnow

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("hr_auth.auth")


def request_reset(store: UserStore, email: str, now: datetime | None = None) -> tuple[User, str] | None:
    """Issue a reset token for an active account. Returns (user, raw_token) or None."""
    now = now or utcnow()
    user = store.get_by_email(email)
    if user is None or not user.is_active:
        return None
    raw_token = generate_opaque_token()
    expires = now + timedelta(seconds=get_settings().password_reset_expire_seconds)
    store.set_password_reset(user.id, hash_token(raw_token), expires)
    return user, raw_token


def consume_reset(store: UserStore, raw_token: str, new_password: str, now: datetime | None = None) -> User | None:
    """Apply a password reset. Returns the user on success, None for a bad/expired/used token."""
    now = now or utcnow()
    digest = hash_token(raw_token)
    user = store.get_by_reset_token(digest, now)
    if user is None or not user.is_active:
        return None
    if not store.consume_password_reset(user.id, digest, hash_password(new_password)):
        return None
    revoked = store.revoke_all_sessions(user.id, "password_reset")
    logger.info("Password reset completed (user_id=%d, sessions_revoked=%d)", user.id, revoked)
    return user
