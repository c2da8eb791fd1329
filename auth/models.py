"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and route
handlers do the work; auth/lockout.py and auth/sessions.py own the policies.

All timestamps are ISO-8601 strings produced by core.time_utils.to_iso().

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class User:
    """An HR system login identity.

    email is the login name and is stored lower-cased. employee_id links the
    account to an Employee record owned by the HR core; it is opaque here.

    password_reset_token holds the HMAC digest of the raw reset token, never
    the raw value. failed_login_attempts counts consecutive failures and is
    reset by a successful login or by a lock being applied.
    """

    email: str
    full_name: str
    role: str  # "admin", "hr", "manager", "employee"
    password_hash: str
    id: int | None = None
    employee_id: str | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    account_locked_until: str | None = None
    password_reset_token: str | None = None
    password_reset_expires: str | None = None
    last_login: str | None = None
    last_login_ip: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """One logged-in device. Created at login, rotated on every refresh.

    Security design:
    - refresh_token_hash is HMAC-SHA256(SECRET_KEY, raw_refresh_token). The raw
      token is returned once to the client and never persisted.
    - previous_refresh_token_hash remembers the token replaced by the last
      rotation. Presenting it again means the token leaked, and the session
      is revoked.
    - access_token_jti is the jti of the only access token that is currently
      honoured for this session. Refresh replaces it, so an old access token
      stops working as soon as its successor is issued.
    """

    id: str
    user_id: int
    refresh_token_hash: str
    access_token_jti: str
    expires_at: str
    ip_address: str | None = None
    user_agent: str | None = None
    is_active: bool = True
    previous_refresh_token_hash: str | None = None
    last_activity: str | None = None
    created_at: str | None = None
    revoked_at: str | None = None
    revoked_reason: str | None = None
