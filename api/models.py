"""
API request and response models for the HR auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Password policy lives here (validate_password_strength) so every endpoint
that accepts a new password rejects weak ones with the same 422.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import Session, User
from auth.rbac import Role
from audit.models import AuditLog
from core.config import get_settings

# bcrypt ignores everything past 72 bytes.
_BCRYPT_MAX_BYTES = 72


def validate_password_strength(value: str) -> str:
    """Enforce the password policy for new passwords.

    At least PASSWORD_MIN_LENGTH characters, at most 72 UTF-8 bytes, and at
    least one letter and one digit.
    """
    min_length = get_settings().password_min_length
    if len(value) < min_length:
        raise ValueError(f"Password must be at least {min_length} characters.")
    if len(value.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise ValueError(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes.")
    if not any(c.isalpha() for c in value) or not any(c.isdigit() for c in value):
        raise ValueError("Password must contain at least one letter and one digit.")
    return value


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(max_length=256)
    full_name: str = Field(min_length=1, max_length=255)
    role: Role = Role.employee
    employee_id: Optional[str] = Field(default=None, max_length=20)

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        return validate_password_strength(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    No strength check here: existing passwords are verified, not set.
    """

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=256)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh.

    refresh_token may be omitted when the browser sends the refresh cookie.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=256)


class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirm(BaseModel):
    """Request body for POST /api/v1/auth/password-reset."""

    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(max_length=256)

    @field_validator("new_password")
    @classmethod
    def check_password(cls, value: str) -> str:
        return validate_password_strength(value)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=256)
    new_password: str = Field(max_length=256)

    @field_validator("new_password")
    @classmethod
    def check_password(cls, value: str) -> str:
        return validate_password_strength(value)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user account. Never includes hashes or reset tokens."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    full_name: str
    role: str
    employee_id: Optional[str] = None
    is_active: bool
    account_locked_until: Optional[str] = None
    last_login: Optional[str] = None
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            employee_id=user.employee_id,
            is_active=user.is_active,
            account_locked_until=user.account_locked_until,
            last_login=user.last_login,
            created_at=user.created_at or "",
        )


class MeResponse(UserResponse):
    """Response for GET /api/v1/auth/me -- the caller plus their effective permissions."""

    permissions: list[str]
    session_id: str


class TokenResponse(BaseModel):
    """Response for POST /auth/login and POST /auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int
    session_id: str
    user: UserResponse


class SessionResponse(BaseModel):
    """One row of GET /api/v1/auth/sessions."""

    model_config = ConfigDict(frozen=True)

    id: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: Optional[str]
    last_activity: Optional[str]
    expires_at: str
    current: bool

    @classmethod
    def from_session(cls, session: Session, current_session_id: str) -> "SessionResponse":
        return cls(
            id=session.id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            created_at=session.created_at,
            last_activity=session.last_activity,
            expires_at=session.expires_at,
            current=session.id == current_session_id,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    sessions_revoked: int


# ---------------------------------------------------------------------------
# User administration
# ---------------------------------------------------------------------------


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: Optional[Role] = None
    is_active: Optional[bool] = None
    full_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    employee_id: Optional[str] = Field(default=None, max_length=20)


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: Optional[int]
    session_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    action_category: Optional[str]
    severity: Optional[str]
    method: Optional[str]
    endpoint: Optional[str]
    status_code: Optional[int]
    duration_ms: Optional[int]
    ip_address: Optional[str]
    user_agent: Optional[str]
    changes: Optional[dict[str, Any]]
    status: str
    error_message: Optional[str]
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditLog) -> "AuditLogResponse":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            session_id=entry.session_id,
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            action_category=entry.action_category,
            severity=entry.severity,
            method=entry.method,
            endpoint=entry.endpoint,
            status_code=entry.status_code,
            duration_ms=entry.duration_ms,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            changes=entry.changes,
            status=entry.status,
            error_message=entry.error_message,
            created_at=entry.created_at or "",
        )


class AuditLogPage(BaseModel):
    """Paginated response for GET /api/v1/audit-logs."""

    model_config = ConfigDict(frozen=True)

    items: list[AuditLogResponse]
    total: int
    limit: int
    offset: int


class AuditStatisticsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    failures: int
    by_action: dict[str, int]
    by_status: dict[str, int]
    by_severity: dict[str, int]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"  # "healthy" | "degraded"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class HealthStatusResponse(BaseModel):
    """Response for the liveness and readiness checks."""

    model_config = ConfigDict(frozen=True)

    status: str  # "alive" | "ready" | "not_ready"
