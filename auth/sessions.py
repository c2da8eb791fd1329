"""
auth/sessions.py -- Session lifecycle: login issue, refresh rotation, access validation.

A session is one logged-in device. It owns two credentials:

  access token  -- JWT, 1 hour, verified statelessly by signature and then
                   matched against the session's access_token_jti.
  refresh token -- opaque, 7 days, stored only as an HMAC digest. Every use
                   rotates it: the client receives a new refresh token and a
                   new access token, and both old ones stop working.

Reuse detection: the digest replaced by the last rotation is kept on the
session. If that old token is presented again, either the client replayed it
or it was stolen; the session is revoked in both cases.

Errors are raised as SessionError(code, message). The route layer maps the
code straight into the error envelope.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from auth.models import Session, User
from auth.tokens import create_access_token, generate_opaque_token, hash_token
from core.config import get_settings
from core.time_utils import parse_iso, to_iso, utcnow

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("hr_auth.auth")


class SessionError(Exception):
    """A refresh attempt that must be refused.

    code is machine-readable and ends up in the API error envelope.
    session is the session the token resolved to, when there was one, so the
    caller can attribute the audit record.
    """

    def __init__(self, code: str, message: str, session: Session | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.session = session


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    session_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def _refresh_expiry(now: datetime) -> datetime:
    return now + timedelta(days=get_settings().refresh_token_expire_days)


def start_session(
    store: UserStore,
    user: User,
    ip_address: str | None,
    user_agent: str | None,
    now: datetime | None = None,
) -> IssuedTokens:
    """Create a session row for a freshly authenticated user and issue both tokens."""
    now = now or utcnow()
    session_id = uuid.uuid4().hex
    access_token, jti, access_expires = create_access_token(user, session_id, now)
    raw_refresh = generate_opaque_token()
    refresh_expires = _refresh_expiry(now)
    store.create_session(
        Session(
            id=session_id,
            user_id=user.id,
            refresh_token_hash=hash_token(raw_refresh),
            access_token_jti=jti,
            expires_at=to_iso(refresh_expires),
            ip_address=ip_address,
            user_agent=user_agent,
            last_activity=to_iso(now),
            created_at=to_iso(now),
        )
    )
    return IssuedTokens(
        access_token=access_token,
        refresh_token=raw_refresh,
        session_id=session_id,
        access_expires_at=access_expires,
        refresh_expires_at=refresh_expires,
    )


def refresh_session(
    store: UserStore,
    raw_refresh_token: str,
    ip_address: str | None,
    user_agent: str | None,
    now: datetime | None = None,
) -> tuple[User, IssuedTokens]:
    """Exchange a refresh token for a new token pair (rotation).

    Raises SessionError with one of:
      invalid_refresh_token -- unknown token
      refresh_token_reused  -- token was already rotated away; session revoked
      session_revoked       -- session logged out / revoked, or lost a rotation race
      session_expired       -- refresh window elapsed
      account_disabled      -- user deactivated since login
    """
    now = now or utcnow()
    digest = hash_token(raw_refresh_token)
    session = store.get_session_by_refresh_hash(digest)

    if session is None:
        replayed = store.get_session_by_previous_refresh_hash(digest)
        if replayed is not None:
            store.revoke_session(replayed.id, "refresh_token_reuse")
            logger.warning("Refresh token reuse detected; session %s revoked", replayed.id)
            raise SessionError("refresh_token_reused", "Refresh token has already been used.", replayed)
        raise SessionError("invalid_refresh_token", "Refresh token is invalid.")

    if not session.is_active:
        raise SessionError("session_revoked", "Session has been revoked.", session)

    expires_at = parse_iso(session.expires_at)
    if expires_at is None or expires_at <= now:
        store.revoke_session(session.id, "expired")
        raise SessionError("session_expired", "Session has expired. Please log in again.", session)

    user = store.get_by_id(session.user_id)
    if user is None or not user.is_active:
        store.revoke_session(session.id, "account_disabled")
        raise SessionError("account_disabled", "Account is disabled.", session)

    access_token, jti, access_expires = create_access_token(user, session.id, now)
    new_refresh = generate_opaque_token()
    refresh_expires = _refresh_expiry(now)
    rotated = store.rotate_session(
        session.id,
        old_hash=digest,
        new_hash=hash_token(new_refresh),
        new_jti=jti,
        expires_at=refresh_expires,
        now=now,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    if not rotated:
        # A concurrent request rotated or revoked the session first.
        raise SessionError("session_revoked", "Session has been revoked.", session)

    return user, IssuedTokens(
        access_token=access_token,
        refresh_token=new_refresh,
        session_id=session.id,
        access_expires_at=access_expires,
        refresh_expires_at=refresh_expires,
    )


def validate_access(store: UserStore, claims: dict, now: datetime | None = None) -> tuple[User, Session] | None:
    """Resolve verified access-token claims to a live (User, Session) pair.

    The signature and exp were already checked by decode_access_token(). This
    adds the stateful checks: the session exists, is active, is unexpired,
    belongs to the token's user, and still lists this token's jti.
    """
    now = now or utcnow()
    session = store.get_session(claims["sid"])
    if session is None or not session.is_active:
        return None
    if session.user_id != claims["user_id"] or session.access_token_jti != claims["jti"]:
        return None
    expires_at = parse_iso(session.expires_at)
    if expires_at is None or expires_at <= now:
        return None
    user = store.get_by_id(session.user_id)
    if user is None or not user.is_active:
        return None
    return user, session


def run_session_cleanup(store: UserStore, now: datetime | None = None) -> tuple[int, int]:
    """Expire overdue sessions and purge old inactive ones. Returns (expired, deleted)."""
    now = now or utcnow()
    expired, deleted = store.cleanup_sessions(now, get_settings().session_retention_days)
    if expired or deleted:
        logger.info("Session cleanup: %d expired, %d deleted", expired, deleted)
    return expired, deleted
