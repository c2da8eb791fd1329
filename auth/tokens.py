"""
auth/tokens.py -- JWT, password hashing, and opaque token utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY and
       carry user_id, email, role, session id (sid) and a unique jti. They
       expire after ACCESS_TOKEN_EXPIRE_SECONDS (1 hour). Verification returns
       None on any failure -- route layer turns that into a 401.

  Passwords: bcrypt directly. The _DUMMY_HASH constant enables timing
       equalization in check_credentials() so response time does not reveal
       whether an email is registered [C1].

  Opaque tokens: refresh and password-reset tokens are secrets.token_urlsafe(32)
       (256 bits). We store HMAC-SHA256(SECRET_KEY, raw) so lookup is O(1) and
       a leaked database does not yield usable tokens.

Layer rule: no imports from api/ or audit/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings
from core.time_utils import utcnow

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("hr_auth.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_ACCESS_TYPE = "access"
_REQUIRED_CLAIMS = ("user_id", "role", "sid", "jti")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps passwords at
    72 bytes so two different passwords can never collide on truncation.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB; treat as a mismatch.
        return False


# Timing equalization dummy hash [C1].
_DUMMY_HASH: str = hash_password("hr_auth_timing_dummy")


def check_credentials(store: UserStore, email: str, password: str) -> User | None:
    """Look up email and verify password with timing equalization.

    Always runs bcrypt whether or not the account exists. Returns the User
    when the password matches -- including locked or inactive accounts, so
    the caller can apply lockout and is_active policy -- and None otherwise.
    """
    user = store.get_by_email(email)
    if user is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def burn_password_check(password: str) -> None:
    """Run one bcrypt comparison against the dummy hash and discard the result.

    Used on paths that refuse before verifying (e.g. a locked account) so they
    cost the same as a real check.
    """
    verify_password(password, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user: User, session_id: str, now: datetime | None = None) -> tuple[str, str, datetime]:
    """Encode a signed access JWT bound to one session.

    Returns (token, jti, expires_at). The caller stores jti on the session
    row; auth.sessions.validate_access() rejects tokens whose jti no longer
    matches.
    """
    issued = now or utcnow()
    expire = issued + timedelta(seconds=_settings.access_token_expire_seconds)
    jti = uuid.uuid4().hex
    payload = {
        "sub": user.email,
        "user_id": user.id,
        "role": user.role,
        "sid": session_id,
        "jti": jti,
        "type": _ACCESS_TYPE,
        "iat": int(issued.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM), jti, expire


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an access JWT. Returns the payload dict or None on any failure.

    Expiry is enforced by python-jose against the wall clock.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != _ACCESS_TYPE:
        return None
    if any(claim not in payload for claim in _REQUIRED_CLAIMS):
        return None
    return payload


# ---------------------------------------------------------------------------
# Opaque tokens (refresh, password reset)
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """Return a url-safe random token with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def hash_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the store can look tokens up by digest through a
    UNIQUE index. Without SECRET_KEY a stolen digest cannot be matched.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, access_token: str, refresh_token: str) -> None:
    """Write both tokens as httpOnly cookies for browser clients.

    The refresh cookie is scoped to the auth routes so it is not sent with
    every API call.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=access_token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.access_token_expire_seconds,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=refresh_token,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        max_age=_settings.refresh_token_expire_days * 86400,
        path="/api/v1/auth",
    )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE, path="/api/v1/auth")
