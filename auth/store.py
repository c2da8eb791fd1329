"""
auth/store.py -- SQLAlchemy Core persistence layer for users and sessions.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_session are the mappers. Route and dependency code
never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Raw refresh and reset tokens never reach this module -- callers pass the
  HMAC digest from auth.tokens.hash_token().

Timestamps are fixed-width ISO-8601 strings (core.time_utils.to_iso), so the
range filters below (expires_at > now, ...) are plain string comparisons.

DB path: auth/hr_auth.db by default (Settings.database_url).

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import Session, User
from core.config import get_settings
from core.time_utils import to_iso, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("full_name", String(255), nullable=False),
    Column("role", String(20), nullable=False, server_default="employee"),
    Column("employee_id", String(20)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("account_locked_until", String(32)),
    Column("password_reset_token", String(64)),  # HMAC-SHA256 hex of the raw token
    Column("password_reset_expires", String(32)),
    Column("last_login", String(32)),
    Column("last_login_ip", String(45)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

Index("ix_users_role", _users.c.role)
Index("ix_users_is_active", _users.c.is_active)
Index("ix_users_employee_id", _users.c.employee_id)
Index(
    "ix_users_password_reset_token",
    _users.c.password_reset_token,
    sqlite_where=_users.c.password_reset_token.isnot(None),
    postgresql_where=_users.c.password_reset_token.isnot(None),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("refresh_token_hash", String(64), nullable=False, unique=True),
    Column("previous_refresh_token_hash", String(64)),
    Column("access_token_jti", String(32), nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("expires_at", String(32), nullable=False),
    Column("last_activity", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("revoked_reason", String(64)),
)

Index("ix_sessions_user_id", _sessions.c.user_id)
Index("ix_sessions_user_active", _sessions.c.user_id, _sessions.c.is_active)
Index("ix_sessions_active_expires", _sessions.c.is_active, _sessions.c.expires_at)
Index("ix_sessions_previous_refresh", _sessions.c.previous_refresh_token_hash)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON makes the sessions.user_id
    ON DELETE CASCADE effective.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def _now_iso() -> str:
    return to_iso(utcnow())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Session entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="a@example.com", full_name="A", role="admin",
                                     password_hash=hash_password("secret")))
        user = store.get_by_email("a@example.com")
        store.close()
    """

    _UPDATABLE_USER_FIELDS = frozenset(
        {
            "email",
            "full_name",
            "role",
            "employee_id",
            "is_active",
            "password_hash",
            "password_reset_token",
            "password_reset_expires",
            "failed_login_attempts",
            "account_locked_until",
            "last_login",
            "last_login_ip",
        }
    )

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists (bootstrap detection)."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        The email is case-folded before insert. Raises
        sqlalchemy.exc.IntegrityError if the email already exists; callers
        translate that into HTTP 409.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    password_hash=user.password_hash,
                    full_name=user.full_name,
                    role=user.role,
                    employee_id=user.employee_id,
                    is_active=1 if user.is_active else 0,
                    failed_login_attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, role: str | None = None, is_active: bool | None = None) -> list[User]:
        """Return users ordered by email, optionally filtered by role and active flag."""
        query = _users.select()
        if role is not None:
            query = query.where(_users.c.role == role)
        if is_active is not None:
            query = query.where(_users.c.is_active == (1 if is_active else 0))
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user and stamp updated_at.

        Accepted fields are listed in _UPDATABLE_USER_FIELDS; anything else
        raises ValueError. is_active must be passed as bool.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - self._UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Return the number of active admin users (last-admin guard)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where((_users.c.role == "admin") & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Login attempt bookkeeping
    # ------------------------------------------------------------------

    def increment_failed_logins(self, user_id: int) -> int:
        """Atomically add one to failed_login_attempts and return the new value.

        The increment happens in SQL so two concurrent failures cannot both
        read the same old value.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=_users.c.failed_login_attempts + 1, updated_at=_now_iso())
            )
            count = conn.execute(select(_users.c.failed_login_attempts).where(_users.c.id == user_id)).scalar()
            conn.commit()
        return count or 0

    def lock_account(self, user_id: int, until: datetime) -> None:
        """Lock the account until the given time and reset the failure counter."""
        self.update_user(user_id, account_locked_until=to_iso(until), failed_login_attempts=0)

    def unlock_account(self, user_id: int) -> bool:
        return self.update_user(user_id, account_locked_until=None, failed_login_attempts=0)

    def record_login(self, user_id: int, ip_address: str | None, now: datetime) -> None:
        """Stamp a successful login and clear any lockout state."""
        self.update_user(
            user_id,
            last_login=to_iso(now),
            last_login_ip=ip_address,
            failed_login_attempts=0,
            account_locked_until=None,
        )

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def set_password_reset(self, user_id: int, token_hash: str, expires_at: datetime) -> None:
        """Store a reset token digest, replacing any earlier outstanding token."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    password_reset_token=token_hash,
                    password_reset_expires=to_iso(expires_at),
                    updated_at=_now_iso(),
                )
            )
            conn.commit()

    def set_password(self, user_id: int, password_hash: str) -> bool:
        """Replace the password hash and void any outstanding reset token."""
        return self.update_user(
            user_id,
            password_hash=password_hash,
            password_reset_token=None,
            password_reset_expires=None,
        )

    def get_by_reset_token(self, token_hash: str, now: datetime) -> User | None:
        """Return the user owning an unexpired reset token digest, else None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.password_reset_token == token_hash) & (_users.c.password_reset_expires > to_iso(now))
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def consume_password_reset(self, user_id: int, token_hash: str, password_hash: str) -> bool:
        """Set a new password and clear the reset token in one statement.

        The WHERE clause repeats the token digest so a token can only be
        consumed once, even by two concurrent requests. Lockout state is
        cleared as well: the user has proven control of the mailbox.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.password_reset_token == token_hash))
                .values(
                    password_hash=password_hash,
                    password_reset_token=None,
                    password_reset_expires=None,
                    failed_login_attempts=0,
                    account_locked_until=None,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Session queries
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> str:
        """Insert a session row and return its id."""
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    refresh_token_hash=session.refresh_token_hash,
                    access_token_jti=session.access_token_jti,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    is_active=1,
                    expires_at=session.expires_at,
                    last_activity=session.last_activity or now,
                    created_at=session.created_at or now,
                )
            )
            conn.commit()
        return session.id

    def get_session(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_session_by_refresh_hash(self, token_hash: str) -> Session | None:
        """Look up a session by its current refresh token digest. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.refresh_token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_session_by_previous_refresh_hash(self, token_hash: str) -> Session | None:
        """Look up a session whose last rotation replaced this refresh token digest."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(_sessions.c.previous_refresh_token_hash == token_hash)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def rotate_session(
        self,
        session_id: str,
        old_hash: str,
        new_hash: str,
        new_jti: str,
        expires_at: datetime,
        now: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Swap in a new refresh token and access jti (compare-and-swap on old_hash).

        Returns False if the session is no longer active or another request
        already rotated it -- exactly one caller can win with a given token.
        """
        values: dict = {
            "refresh_token_hash": new_hash,
            "previous_refresh_token_hash": old_hash,
            "access_token_jti": new_jti,
            "expires_at": to_iso(expires_at),
            "last_activity": to_iso(now),
        }
        if ip_address is not None:
            values["ip_address"] = ip_address
        if user_agent is not None:
            values["user_agent"] = user_agent
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == session_id)
                    & (_sessions.c.refresh_token_hash == old_hash)
                    & (_sessions.c.is_active == 1)
                )
                .values(**values)
            )
            conn.commit()
        return result.rowcount > 0

    def list_active_sessions(self, user_id: int, now: datetime) -> list[Session]:
        """Return a user's active, unexpired sessions (most recently used first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.is_active == 1)
                    & (_sessions.c.expires_at > to_iso(now))
                )
                .order_by(_sessions.c.last_activity.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def revoke_session(self, session_id: str, reason: str, user_id: int | None = None) -> bool:
        """Deactivate one active session.

        When user_id is given it must match the owner -- an IDOR guard for the
        self-service DELETE /auth/sessions/{id} route.

        Returns True if a session was revoked, False if not found, already
        inactive, or owned by someone else.
        """
        condition = (_sessions.c.id == session_id) & (_sessions.c.is_active == 1)
        if user_id is not None:
            condition = condition & (_sessions.c.user_id == user_id)
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update().where(condition).values(is_active=0, revoked_at=_now_iso(), revoked_reason=reason)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_sessions(self, user_id: int, reason: str, except_session_id: str | None = None) -> int:
        """Deactivate every active session of a user. Returns the number revoked."""
        condition = (_sessions.c.user_id == user_id) & (_sessions.c.is_active == 1)
        if except_session_id is not None:
            condition = condition & (_sessions.c.id != except_session_id)
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update().where(condition).values(is_active=0, revoked_at=_now_iso(), revoked_reason=reason)
            )
            conn.commit()
        return result.rowcount

    def cleanup_sessions(self, now: datetime, retention_days: int) -> tuple[int, int]:
        """Periodic maintenance. Returns (expired, deleted).

        1. Active sessions past expires_at are deactivated (reason "expired").
        2. Inactive sessions whose expiry or revocation is older than the
           retention window are deleted.
        """
        now_iso = to_iso(now)
        cutoff = to_iso(now - timedelta(days=retention_days))
        with self.engine.connect() as conn:
            expired = conn.execute(
                _sessions.update()
                .where((_sessions.c.is_active == 1) & (_sessions.c.expires_at <= now_iso))
                .values(is_active=0, revoked_at=now_iso, revoked_reason="expired")
            ).rowcount
            deleted = conn.execute(
                _sessions.delete().where(
                    (_sessions.c.is_active == 0)
                    & (
                        (_sessions.c.expires_at < cutoff)
                        | (_sessions.c.revoked_at.isnot(None) & (_sessions.c.revoked_at < cutoff))
                    )
                )
            ).rowcount
            conn.commit()
        return expired, deleted

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers and row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    """Case-fold and strip an email so uniqueness ignores case."""
    return email.strip().lower()


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        full_name=row.full_name,
        role=row.role,
        employee_id=row.employee_id,
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts or 0,
        account_locked_until=row.account_locked_until,
        password_reset_token=row.password_reset_token,
        password_reset_expires=row.password_reset_expires,
        last_login=row.last_login,
        last_login_ip=row.last_login_ip,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        refresh_token_hash=row.refresh_token_hash,
        previous_refresh_token_hash=row.previous_refresh_token_hash,
        access_token_jti=row.access_token_jti,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        is_active=bool(row.is_active),
        expires_at=row.expires_at,
        last_activity=row.last_activity,
        created_at=row.created_at,
        revoked_at=row.revoked_at,
        revoked_reason=row.revoked_reason,
    )
