"""
audit/models.py -- Domain dataclass and vocabularies for audit records.

An AuditLog is written once and never changed. changes is a structured diff
of the form {"field": {"old": <value>, "new": <value>}} for edits, or a flat dict of
facts (e.g. {"sessions_revoked": 3}) for bulk actions. Secrets (password
hashes, tokens) are never put into it.

Every action belongs to one category, and every entry carries a severity.
When the writer leaves either unset, the store derives it with
category_for() and default_severity().
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class AuditAction(str, Enum):
    REGISTER = "register"
    LOGIN = "login"
    REFRESH = "refresh"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGE = "password_change"
    SESSION_REVOKE = "session_revoke"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCK = "account_unlock"
    USER_UPDATE = "user_update"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AuditCategory(str, Enum):
    AUTHENTICATION = "authentication"
    SESSION = "session"
    PASSWORD = "password"
    ACCOUNT = "account"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


ACTION_CATEGORIES: dict[AuditAction, AuditCategory] = {
    AuditAction.LOGIN: AuditCategory.AUTHENTICATION,
    AuditAction.REFRESH: AuditCategory.AUTHENTICATION,
    AuditAction.LOGOUT: AuditCategory.SESSION,
    AuditAction.LOGOUT_ALL: AuditCategory.SESSION,
    AuditAction.SESSION_REVOKE: AuditCategory.SESSION,
    AuditAction.PASSWORD_RESET_REQUEST: AuditCategory.PASSWORD,
    AuditAction.PASSWORD_RESET: AuditCategory.PASSWORD,
    AuditAction.PASSWORD_CHANGE: AuditCategory.PASSWORD,
    AuditAction.REGISTER: AuditCategory.ACCOUNT,
    AuditAction.ACCOUNT_LOCKED: AuditCategory.ACCOUNT,
    AuditAction.ACCOUNT_UNLOCK: AuditCategory.ACCOUNT,
    AuditAction.USER_UPDATE: AuditCategory.ACCOUNT,
}

# Failure reasons that point at token theft rather than a mistyped password.
_CRITICAL_ERRORS = frozenset({"refresh_token_reused"})


def category_for(action: str) -> str:
    """Return the category of an action; unknown actions fall under account."""
    try:
        return ACTION_CATEGORIES[AuditAction(action)].value
    except ValueError:
        return AuditCategory.ACCOUNT.value


def default_severity(action: str, status: str, error_message: Optional[str] = None) -> str:
    if error_message in _CRITICAL_ERRORS:
        return AuditSeverity.CRITICAL.value
    if status == AuditStatus.FAILURE.value or action == AuditAction.ACCOUNT_LOCKED.value:
        return AuditSeverity.WARNING.value
    return AuditSeverity.INFO.value


@dataclass
class AuditLog:
    """One security-relevant event.

    user_id is None when the actor could not be identified (e.g. a failed
    login for an unknown email). method, endpoint, status_code and
    duration_ms describe the HTTP request that caused the event and stay
    None for entries written outside a request (the CLI). id and created_at
    are None until stored.
    """

    action: str
    resource_type: str  # "user" | "session"
    status: str = AuditStatus.SUCCESS.value
    user_id: Optional[int] = None
    session_id: Optional[str] = None
    resource_id: Optional[str] = None
    action_category: Optional[str] = None
    severity: Optional[str] = None
    method: Optional[str] = None
    endpoint: Optional[str] = None
    status_code: Optional[int] = None
    duration_ms: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    changes: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[str] = None


def diff_fields(before: dict[str, Any], after: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Return {"field": {"old": x, "new": y}} for every key whose value changed."""
    return {key: {"old": before.get(key), "new": value} for key, value in after.items() if before.get(key) != value}
